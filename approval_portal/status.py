"""
Status Synchronizer Module

Projects workflow state onto the human-readable status string stored in the
entity's ``status`` column ("Pending Line Manager", "Approved", ...), and
rebuilds that projection from the execution log alone.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from .adapters import AdapterRegistry
from .exceptions import TemplateIntegrityError
from .instances import Decision, InstanceRepository, StepExecution, WorkflowInstance, WorkflowStatus
from .logging_config import get_logger
from .templates import StepDefinition, TemplateStore, WorkflowTemplate


logger = get_logger("portal.status")

PENDING_PREFIX = "Pending "
CANCELLED_STATUS = "Cancelled"
APPROVED_STATUS = "Approved"


def pending_step(template: WorkflowTemplate, sequence_number: int) -> StepDefinition:
    """
    The step awaiting action when an instance sits at sequence_number.

    A requestor step is fulfilled by the submission itself, so the step it
    points to is the one awaiting action.
    """
    step = template.step_at(sequence_number)
    if step.is_requestor_step:
        return template.next_step(step)
    return step


def pending_label(step: StepDefinition) -> str:
    return f"{PENDING_PREFIX}{step.label}"


@dataclass
class ReplayedState:
    """Instance state reconstructed from executions"""
    status: WorkflowStatus
    current_sequence_number: int
    last_execution: Optional[StepExecution]


def rebuild_state(template: WorkflowTemplate, executions: List[StepExecution]) -> ReplayedState:
    """
    Fold the execution log into (status, current sequence).

    The first row is the submission acknowledgment and leaves the instance at
    its first sequence. Later ``Processed`` rows are conditional skips; both
    skips and approvals move the instance past the step they name.
    """
    status = WorkflowStatus.IN_PROGRESS
    current = template.first_step.sequence_number
    last: Optional[StepExecution] = None

    for index, execution in enumerate(executions):
        last = execution
        if status.is_terminal:
            break
        if index == 0 and execution.decision == Decision.PROCESSED:
            continue
        if execution.decision in (Decision.APPROVED, Decision.PROCESSED):
            step = template.step_at(execution.sequence_number)
            next_step = template.next_step(step)
            if next_step is None:
                status = WorkflowStatus.APPROVED
            else:
                current = next_step.sequence_number
        elif execution.decision == Decision.REJECTED:
            status = WorkflowStatus.REJECTED
        elif execution.decision == Decision.CANCELLED:
            status = WorkflowStatus.CANCELLED

    return ReplayedState(status, current, last)


class StatusSynchronizer:
    """Keeps the entity status column consistent with the workflow instance"""

    def __init__(self, templates: TemplateStore, adapters: AdapterRegistry,
                 repository: InstanceRepository):
        self.templates = templates
        self.adapters = adapters
        self.repository = repository

    def _template(self, template_id: str) -> WorkflowTemplate:
        template = self.templates.get_template(template_id)
        if template is None:
            raise TemplateIntegrityError(f"Template {template_id} not found")
        return template

    def project_with(self, template: WorkflowTemplate, status: WorkflowStatus,
                     current_sequence_number: int,
                     latest_execution: Optional[StepExecution]) -> str:
        # A final decision in the log wins over an instance row that disagrees
        if latest_execution is not None:
            if latest_execution.decision == Decision.REJECTED:
                status = WorkflowStatus.REJECTED
            elif latest_execution.decision == Decision.CANCELLED:
                status = WorkflowStatus.CANCELLED

        if status == WorkflowStatus.APPROVED:
            return APPROVED_STATUS
        if status == WorkflowStatus.CANCELLED:
            return CANCELLED_STATUS
        if status == WorkflowStatus.REJECTED:
            if latest_execution is not None and latest_execution.decision == Decision.REJECTED:
                return template.step_at(latest_execution.sequence_number).on_reject_status
            return "Rejected"
        return pending_label(pending_step(template, current_sequence_number))

    def project(self, instance: WorkflowInstance, latest_execution: Optional[StepExecution]) -> str:
        """Status string for an instance given its latest execution; pure and idempotent"""
        template = self._template(instance.template_id)
        return self.project_with(template, instance.status,
                                 instance.current_sequence_number, latest_execution)

    def replay(self, template: WorkflowTemplate, executions: List[StepExecution]) -> str:
        """Status string rebuilt from the execution log alone"""
        state = rebuild_state(template, executions)
        return self.project_with(template, state.status, state.current_sequence_number,
                                 state.last_execution)

    def synchronize(self, instance: WorkflowInstance,
                    timeout: Optional[float] = None) -> Tuple[str, bool]:
        """
        Write the projected status into the entity's status column.

        The committed instance row is reloaded under the entity lock, so a
        synchronization that runs late never writes an older projection over
        a newer one.

        Returns:
            (projected status, whether the column changed)
        """
        with self.repository.storage.atomic(lock_key=instance.entity_key, timeout=timeout):
            current = self.repository.load_instance(instance.id) or instance
            latest = self.repository.latest_execution(current.id)
            projected = self.project(current, latest)
            changed = self.adapters.get(current.entity_type).write_status(current.entity_id, projected)
        if changed:
            logger.info(f"{current.entity_key} status set to '{projected}'")
        return projected, changed
