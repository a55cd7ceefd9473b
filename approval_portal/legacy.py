"""
Legacy Bridge Module

The portal's older action handlers hard-coded one status sequence per entity
type and wrote those statuses straight into the entity row. This module:

* describes those sequences and installs them as the default templates,
* adopts entities that only carry legacy state into a workflow instance,
* accepts legacy-shaped actions and routes them through the engine.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import uuid

from .adapters import EntityAdapter, EntityType
from .audit import AuditEventType
from .exceptions import DuplicateInstanceError, TemplateMismatchError, ValidationError
from .instances import Decision, StepExecution, WorkflowInstance, WorkflowStatus
from .logging_config import get_logger, log_action
from .roles import SYSTEM_ACTOR, Actor
from .status import PENDING_PREFIX
from .templates import REQUESTOR_KEY, RoleResolution, StepDefinition, TemplateStore, WorkflowTemplate
from .workflows import TransitionResult, WorkflowEngine


logger = get_logger("portal.legacy")

# Overseas travel, home leave, or a cost above this needs HOD approval
HOD_COST_THRESHOLD = 1000
HOD_TRAVEL_TYPES = ["Overseas", "Home Leave Passage"]

# Pending-status labels written by the legacy handlers, in order
LEGACY_SEQUENCES: Dict[EntityType, List[str]] = {
    EntityType.TRF: ["Department Focal", "Line Manager", "HOD"],
    EntityType.CLAIM: ["Verification", "HOD Approval", "Finance Approval"],
    EntityType.VISA: ["Department Focal", "Line Manager/HOD", "Visa Clerk"],
    EntityType.ACCOMMODATION: ["Department Focal", "Line Manager", "HOD"],
    EntityType.TRANSPORT: ["Department Focal", "Line Manager", "HOD"],
}

# Who acts on each legacy label
LEGACY_ROLES: Dict[str, Tuple[str, RoleResolution]] = {
    "Department Focal": ("Department Focal", RoleResolution.DEPARTMENT_SCOPED),
    "Verification": ("Department Focal", RoleResolution.DEPARTMENT_SCOPED),
    "Line Manager": ("departmental-line-manager", RoleResolution.DYNAMIC_LOOKUP),
    "Line Manager/HOD": ("departmental-line-manager", RoleResolution.DYNAMIC_LOOKUP),
    "HOD": ("HOD", RoleResolution.LITERAL),
    "HOD Approval": ("HOD", RoleResolution.LITERAL),
    "Finance Approval": ("Finance Clerk", RoleResolution.LITERAL),
    "Visa Clerk": ("Visa Clerk", RoleResolution.LITERAL),
}

LEGACY_SKIPS: Dict[Tuple[EntityType, str], Dict[str, Any]] = {
    (EntityType.TRF, "HOD"): {
        "travel_type__not_in": HOD_TRAVEL_TYPES,
        "estimated_cost__lte": HOD_COST_THRESHOLD,
    },
}

# Action names the legacy endpoints accepted
LEGACY_ACTION_ALIASES = {
    "verify": "approve",
    "approve_hod": "approve",
    "approve_finance": "approve",
}

# Actions that decide a step and must be bound to the state the approver saw
DECISION_ACTIONS = ("approve", "reject")

TERMINAL_LEGACY_STATUSES = {
    "Approved": WorkflowStatus.APPROVED,
    "Rejected": WorkflowStatus.REJECTED,
    "Cancelled": WorkflowStatus.CANCELLED,
}


def legacy_actor_id(name: Optional[str]) -> str:
    """Legacy rows only carry the actor's name"""
    return f"legacy:{name}"


def default_template_id(entity_type: EntityType) -> str:
    return f"default-{entity_type.value.lower()}"


def legacy_steps(entity_type: EntityType) -> List[StepDefinition]:
    """Step definitions equivalent to an entity type's legacy sequence"""
    labels = LEGACY_SEQUENCES[entity_type]
    steps = []
    for index, label in enumerate(labels):
        role_name, resolution = LEGACY_ROLES[label]
        sequence_number = index + 1
        is_last = index == len(labels) - 1
        steps.append(StepDefinition(
            sequence_number=sequence_number,
            role_name=role_name,
            is_terminal=is_last,
            on_approve_next_sequence=None if is_last else sequence_number + 1,
            resolution=resolution,
            display_name=label,
            skip_when=dict(LEGACY_SKIPS.get((entity_type, label), {}))
        ))
    return steps


def seed_default_templates(store: TemplateStore, created_by: str = "system") -> List[WorkflowTemplate]:
    """
    Install the legacy sequences as templates.

    Idempotent: entity types that already have the default template or any
    active template are left alone. Returns the templates created.
    """
    created = []
    for entity_type in LEGACY_SEQUENCES:
        template_id = default_template_id(entity_type)
        if store.get_template(template_id) or store.get_active_template(entity_type):
            continue
        created.append(store.create_template(
            name=f"{entity_type.value} approval",
            entity_type=entity_type,
            steps=legacy_steps(entity_type),
            created_by=created_by,
            template_id=template_id
        ))
        logger.info(f"Seeded default {entity_type.value} template")
    return created


class LegacyBridge:
    """Moves entities with legacy-only approval state onto the workflow engine"""

    def __init__(self, engine: WorkflowEngine):
        self.engine = engine

    def _step_for_label(self, template: WorkflowTemplate, label: str) -> StepDefinition:
        for step in template.steps:
            if step.label == label and not step.is_requestor_step:
                return step
        raise ValidationError(f"Legacy status 'Pending {label}' has no step in template {template.id}")

    @staticmethod
    def _legacy_row_for(adapter: EntityAdapter, rows: List[Dict[str, Any]], label: Optional[str],
                        status: str) -> Optional[Dict[str, Any]]:
        """Most recent legacy row with the status (and role label, unless None)"""
        for row in reversed(rows):
            normalized = adapter.normalize_legacy_step(row)
            if normalized["status"] == status and label in (None, normalized["role"]):
                return normalized
        return None

    def adopt(self, entity_type: Any, entity_id: str, adopted_by: Actor) -> WorkflowInstance:
        """
        Create a workflow instance matching an entity's legacy status.

        "Pending <label>" places the instance at the step with that label;
        Approved, Rejected and Cancelled create a finished instance. Approvals
        recorded in the legacy approval-steps table supply the actors of the
        imported executions.

        Raises:
            ValidationError: unknown legacy status
            DuplicateInstanceError: the entity already has an instance
        """
        engine = self.engine
        entity_type = EntityType.parse(entity_type)
        lock_key = f"{entity_type.value}:{entity_id}"

        def unit() -> TransitionResult:
            adapter = engine.adapters.get(entity_type)
            context = adapter.read_approval_context(entity_id)
            if engine.repository.find_for_entity(entity_id, entity_type) is not None:
                raise DuplicateInstanceError(f"A workflow instance already exists for {lock_key}")

            template = engine.templates.get_active_template(entity_type)
            if template is None:
                raise TemplateMismatchError(f"No active template for entity type {entity_type.value}")
            template.validate()

            legacy_status = context.status or ""
            legacy_rows = adapter.read_legacy_steps(entity_id)
            chain = [s for s in sorted(template.steps, key=lambda s: s.sequence_number)
                     if not s.is_requestor_step]

            if legacy_status.startswith(PENDING_PREFIX):
                target = self._step_for_label(template, legacy_status[len(PENDING_PREFIX):])
                status = WorkflowStatus.IN_PROGRESS
                passed = chain[:chain.index(target)]
            elif legacy_status in TERMINAL_LEGACY_STATUSES:
                status = TERMINAL_LEGACY_STATUSES[legacy_status]
                if status == WorkflowStatus.APPROVED:
                    target, passed = chain[-1], chain
                else:
                    # The step that rejected or cancelled, from the last legacy row saying so
                    final_row = self._legacy_row_for(adapter, legacy_rows, None, legacy_status)
                    target = next((s for s in chain if final_row and s.label == final_row["role"]), chain[0])
                    passed = chain[:chain.index(target)]
            else:
                raise ValidationError(f"Cannot adopt {lock_key} with legacy status '{legacy_status}'")

            now = datetime.now(timezone.utc)
            instance = WorkflowInstance(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                entity_id=entity_id,
                entity_type=entity_type,
                template_id=template.id,
                current_sequence_number=target.sequence_number,
                status=status,
                initiated_by=context.requestor_id or adopted_by.id,
                initiated_at=now,
                completed_at=None if status == WorkflowStatus.IN_PROGRESS else now,
                metadata={"adopted_from_status": legacy_status, "adopted_by": adopted_by.id}
            )

            executions = [self._execution(
                instance, 0, template.first_step.sequence_number, REQUESTOR_KEY,
                context.requestor_id or adopted_by.id, context.requestor_name or "",
                Decision.PROCESSED, "Submitted", now
            )]
            for step in passed:
                row = self._legacy_row_for(adapter, legacy_rows, step.label, "Approved")
                if row:
                    executions.append(self._execution(
                        instance, len(executions), step.sequence_number, step.role_name,
                        legacy_actor_id(row["name"]), row["name"] or "",
                        Decision.APPROVED, row["comments"], now
                    ))
                else:
                    executions.append(self._execution(
                        instance, len(executions), step.sequence_number, step.role_name,
                        SYSTEM_ACTOR.id, SYSTEM_ACTOR.name, Decision.PROCESSED,
                        "Adopted from legacy status", now
                    ))
            if status in (WorkflowStatus.REJECTED, WorkflowStatus.CANCELLED):
                row = self._legacy_row_for(adapter, legacy_rows, target.label, legacy_status) or {}
                executions.append(self._execution(
                    instance, len(executions), target.sequence_number, target.role_name,
                    legacy_actor_id(row.get("name")) if row.get("name") else adopted_by.id,
                    row.get("name") or adopted_by.name,
                    Decision(legacy_status), row.get("comments"), now
                ))

            for execution in executions:
                engine.repository.append_execution(execution)
            engine.repository.save_instance(instance)
            engine.audit.log_event(
                AuditEventType.INSTANCE_ADOPTED,
                'workflow_instance',
                instance.id,
                {
                    'entity_type': entity_type.value,
                    'entity_id': entity_id,
                    'legacy_status': legacy_status,
                    'imported_steps': len(legacy_rows)
                },
                adopted_by.id
            )

            projected = engine.synchronizer.project_with(
                template, instance.status, instance.current_sequence_number, executions[-1]
            )
            return TransitionResult(instance, executions[0], [], projected)

        result = engine.run_atomic(lock_key, unit)
        log_action(
            logger, "info",
            f"Adopted {lock_key} from legacy status '{result.instance.metadata['adopted_from_status']}'",
            user_id=adopted_by.id, action="adopt", resource=lock_key
        )
        engine.after_commit(result)
        return result.instance

    @staticmethod
    def _execution(instance: WorkflowInstance, position: int, sequence_number: int,
                   role_name: str, actor_id: str, actor_name: str, decision: Decision,
                   comments: Optional[str], now: datetime) -> StepExecution:
        return StepExecution(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            instance_id=instance.id,
            position=position,
            sequence_number=sequence_number,
            role_name=role_name,
            actor_id=actor_id,
            actor_name=actor_name,
            decision=decision,
            timestamp=now,
            comments=comments
        )

    def perform_action(self, entity_type: Any, entity_id: str, action: str, actor: Actor,
                       comments: Optional[str] = None, expected_status: Optional[str] = None,
                       expected_sequence_number: Optional[int] = None) -> TransitionResult:
        """
        Apply a legacy action, adopting the entity first when it has no instance.

        Approve and reject must name the state the approver acted on, either
        the status they were shown ("Pending Line Manager") or the instance's
        sequence number, so a repeated submission cannot approve the next step.

        Raises:
            ValidationError: approve or reject without expected_status or
                expected_sequence_number
            StaleSequenceError: the workflow is no longer in that state
        """
        action = LEGACY_ACTION_ALIASES.get((action or "").strip().lower(), action)
        if (action in DECISION_ACTIONS and not expected_status
                and expected_sequence_number is None):
            raise ValidationError(
                f"Action '{action}' requires the status or sequence number the approver acted on"
            )
        if self.engine.get_instance_for_entity(entity_id, entity_type) is None:
            try:
                self.adopt(entity_type, entity_id, actor)
            except DuplicateInstanceError:
                # Another request adopted it first
                pass
        return self.engine.process_step(
            entity_id, entity_type, action, actor, comments,
            expected_sequence_number=expected_sequence_number,
            expected_status=expected_status
        )
