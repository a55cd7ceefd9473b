"""
Workflow Engine Module

Runs template-driven approval chains for portal entities. Every action is
applied in one atomic unit locked on the entity ("TRF:trf-42"): the instance
and template are loaded, the Role Resolver decides whether the actor may act
on the pending step, the next state is computed from the template, and the
step execution, legacy step row, audit event and notification triggers are
written together. Entity status synchronization and notification delivery
run after commit and never undo a committed transition.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import uuid

from .adapters import AdapterRegistry, EntityContext, EntityType
from .audit import AuditEventType, AuditTrail
from .exceptions import (
    DuplicateInstanceError, InstanceNotFoundError, MissingReasonError,
    NoEligibleApproverError, PortalError, StaleSequenceError, TemplateIntegrityError,
    TemplateMismatchError, TerminalStateError, TransientStorageError,
    UnauthorizedActorError, ValidationError
)
from .instances import (
    Decision, InstanceRepository, StepExecution, WorkflowInstance, WorkflowStatus
)
from .logging_config import get_logger, log_action
from .notifications import NotificationDispatcher, NotificationIntent, NotificationOutbox, NotificationTrigger
from .roles import SYSTEM_ACTOR, Actor, ActorIdentity, RoleResolver
from .status import StatusSynchronizer, pending_step
from .storage import StorageInterface
from .templates import REQUESTOR_KEY, StepDefinition, TemplateStore, WorkflowTemplate, template_lock_key


logger = get_logger("portal.workflows")

ACTIONS = ("approve", "reject", "cancel")
REQUESTOR_LABEL = "Requestor"


@dataclass
class TransitionResult:
    """Outcome of start_instance / process_step"""
    instance: WorkflowInstance
    execution: StepExecution
    triggers: List[NotificationTrigger]
    projected_status: str
    skipped: List[StepExecution] = field(default_factory=list)


class WorkflowEngine:
    """Starts workflow instances and applies approval actions to them"""

    def __init__(self, storage: StorageInterface, templates: TemplateStore,
                 resolver: RoleResolver, adapters: AdapterRegistry,
                 audit_trail: Optional[AuditTrail] = None,
                 dispatcher: Optional[NotificationDispatcher] = None,
                 admin_roles: Optional[List[str]] = None,
                 lock_timeout: float = 5.0, transaction_retries: int = 1):
        self.storage = storage
        self.templates = templates
        self.resolver = resolver
        self.adapters = adapters
        self.audit = audit_trail or AuditTrail(storage)
        self.repository = InstanceRepository(storage)
        self.synchronizer = StatusSynchronizer(templates, adapters, self.repository)
        self.outbox = NotificationOutbox(storage)
        self.dispatcher = dispatcher or NotificationDispatcher(storage)
        self.admin_roles = list(admin_roles) if admin_roles is not None else ["Admin"]
        self.lock_timeout = lock_timeout
        self.transaction_retries = transaction_retries

    # Transactions

    def run_atomic(self, lock_key: str, unit: Callable[[], TransitionResult]) -> TransitionResult:
        """Run unit in a transaction locked on lock_key, retrying transient failures"""
        attempts = self.transaction_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with self.storage.atomic(lock_key=lock_key, timeout=self.lock_timeout):
                    return unit()
            except TransientStorageError:
                if attempt >= attempts:
                    logger.error(f"Giving up on {lock_key} after {attempt} attempts")
                    raise
                logger.warning(f"Transient storage failure on {lock_key}, retrying")
            except (TemplateIntegrityError, TemplateMismatchError, DuplicateInstanceError) as e:
                log_action(
                    logger, "error",
                    f"{type(e).__name__} on {lock_key} needs operator attention: {e.message}",
                    resource=lock_key, extra=e.details or None,
                    exc_info=isinstance(e, TemplateIntegrityError)
                )
                raise

    def after_commit(self, result: TransitionResult) -> None:
        """Write the entity status and deliver triggers; failures are logged only"""
        instance = result.instance
        try:
            self.synchronizer.synchronize(instance, timeout=self.lock_timeout)
        except Exception:
            logger.error(f"Status synchronization failed for {instance.entity_key}", exc_info=True)
        try:
            self.dispatcher.dispatch(result.triggers)
        except Exception:
            logger.error(f"Notification dispatch failed for {instance.entity_key}", exc_info=True)

    # Helpers

    def _load_template(self, template_id: str) -> WorkflowTemplate:
        template = self.templates.get_template(template_id)
        if template is None:
            raise TemplateIntegrityError(
                f"Template {template_id} referenced by an instance no longer exists",
                {"template_id": template_id}
            )
        return template

    @staticmethod
    def _settle(template: WorkflowTemplate, candidate: Optional[StepDefinition],
                context: EntityContext) -> Tuple[Optional[StepDefinition], List[StepDefinition]]:
        """Move past steps whose skip conditions hold; None means nothing is left"""
        skipped = []
        while candidate is not None and candidate.should_skip(context.fields):
            skipped.append(candidate)
            candidate = template.next_step(candidate)
        return candidate, skipped

    def _require_approvers(self, step: StepDefinition, context: EntityContext) -> Set[ActorIdentity]:
        approvers = self.resolver.resolve(step, context)
        if not approvers:
            logger.error(
                f"No eligible approver for '{step.label}' on "
                f"{context.entity_type.value}:{context.entity_id}"
            )
            raise NoEligibleApproverError(
                f"No eligible approver for step '{step.label}'",
                {"sequence_number": step.sequence_number, "role_name": step.role_name}
            )
        return approvers

    def _execution(self, instance: WorkflowInstance, position: int, step_number: int,
                   role_name: str, actor: Actor, decision: Decision,
                   comments: Optional[str], now: datetime) -> StepExecution:
        return StepExecution(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            instance_id=instance.id,
            position=position,
            sequence_number=step_number,
            role_name=role_name,
            actor_id=actor.id,
            actor_name=actor.name,
            decision=decision,
            timestamp=now,
            comments=comments
        )

    def _record(self, instance: WorkflowInstance, execution: StepExecution, step_role: str) -> None:
        self.repository.append_execution(execution)
        adapter = self.adapters.get(instance.entity_type)
        adapter.record_legacy_step(instance.entity_id, execution, step_role=step_role)

    def _skip_executions(self, instance: WorkflowInstance, skipped: List[StepDefinition],
                         position: int, now: datetime) -> List[StepExecution]:
        executions = []
        for offset, step in enumerate(skipped):
            execution = self._execution(
                instance, position + offset, step.sequence_number, step.role_name,
                SYSTEM_ACTOR, Decision.PROCESSED, "Skipped: step not required", now
            )
            self._record(instance, execution, step.label)
            self.audit.log_event(
                AuditEventType.STEP_SKIPPED,
                'workflow_instance',
                instance.id,
                {'sequence_number': step.sequence_number, 'role_name': step.role_name},
                SYSTEM_ACTOR.id
            )
            executions.append(execution)
        return executions

    def _trigger(self, instance: WorkflowInstance, intent: NotificationIntent,
                 recipient_role: str, recipient_ids, sequence_number: Optional[int],
                 context: Dict[str, Any]) -> NotificationTrigger:
        trigger = NotificationTrigger.create(
            instance_id=instance.id,
            intent=intent,
            recipient_role=recipient_role,
            recipient_ids=recipient_ids,
            entity_type=instance.entity_type.value,
            entity_id=instance.entity_id,
            sequence_number=sequence_number,
            context=context
        )
        self.outbox.add(trigger)
        return trigger

    @staticmethod
    def _requestor_ids(instance: WorkflowInstance, context: EntityContext) -> List[str]:
        return [context.requestor_id or instance.initiated_by]

    @staticmethod
    def _notification_context(context: EntityContext, **extra) -> Dict[str, Any]:
        data = {
            'requestor_name': context.requestor_name,
            'department': context.department,
        }
        data.update({k: v for k, v in extra.items() if v is not None})
        return data

    # Instance Management

    def start_instance(self, entity_id: str, entity_type: Any, template_id: Optional[str],
                       initiator: Actor, metadata: Optional[Dict[str, Any]] = None) -> TransitionResult:
        """
        Start the approval workflow for an entity.

        The instance starts at the template's first sequence number with a
        Processed execution acknowledging the submission. When template_id is
        None the entity type's active template is used.

        Raises:
            EntityNotFoundError: the entity does not exist
            DuplicateInstanceError: the entity already has an instance
            TemplateMismatchError: unknown template or template for another entity type
            TemplateIntegrityError: the template's steps are inconsistent
            NoEligibleApproverError: nobody can act on the first pending step
        """
        entity_type = EntityType.parse(entity_type)
        lock_key = f"{entity_type.value}:{entity_id}"

        def unit() -> TransitionResult:
            adapter = self.adapters.get(entity_type)
            context = adapter.read_approval_context(entity_id)

            if self.repository.find_for_entity(entity_id, entity_type) is not None:
                raise DuplicateInstanceError(
                    f"A workflow instance already exists for {lock_key}",
                    {"entity_type": entity_type.value, "entity_id": entity_id}
                )

            if template_id:
                template = self.templates.get_template(template_id)
                if template is None or template.entity_type != entity_type:
                    raise TemplateMismatchError(
                        f"Template {template_id} does not exist for entity type {entity_type.value}"
                    )
            else:
                template = self.templates.get_active_template(entity_type)
                if template is None:
                    raise TemplateMismatchError(f"No active template for entity type {entity_type.value}")
            # The template lock stays held until this transaction ends, so the
            # steps cannot be replaced before the instance referencing them commits
            with self.storage.atomic(lock_key=template_lock_key(template.id), timeout=self.lock_timeout):
                template = self.templates.get_template(template.id) or template
            template.validate()

            first = template.first_step
            candidate = template.next_step(first) if first.is_requestor_step else first
            pending, skipped = self._settle(template, candidate, context)

            now = datetime.now(timezone.utc)
            if not skipped:
                current = first.sequence_number
            else:
                current = pending.sequence_number if pending else skipped[-1].sequence_number
            instance = WorkflowInstance(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                entity_id=entity_id,
                entity_type=entity_type,
                template_id=template.id,
                current_sequence_number=current,
                status=WorkflowStatus.IN_PROGRESS if pending else WorkflowStatus.APPROVED,
                initiated_by=initiator.id,
                initiated_at=now,
                completed_at=None if pending else now,
                metadata=metadata or {}
            )

            approvers = self._require_approvers(pending, context) if pending else set()

            acknowledgment = self._execution(
                instance, 0, first.sequence_number, REQUESTOR_KEY, initiator,
                Decision.PROCESSED, "Submitted", now
            )
            self._record(instance, acknowledgment, REQUESTOR_LABEL)
            self.audit.log_event(
                AuditEventType.INSTANCE_STARTED,
                'workflow_instance',
                instance.id,
                {
                    'entity_type': entity_type.value,
                    'entity_id': entity_id,
                    'template_id': template.id,
                    'sequence_number': current
                },
                initiator.id
            )
            skipped_executions = self._skip_executions(instance, skipped, 1, now)

            notification_context = self._notification_context(context, template=template.name)
            triggers = [self._trigger(
                instance, NotificationIntent.REQUEST_SUBMITTED, REQUESTOR_LABEL,
                self._requestor_ids(instance, context), first.sequence_number, notification_context
            )]
            if pending:
                triggers.append(self._trigger(
                    instance, NotificationIntent.APPROVAL_REQUIRED, pending.label,
                    [a.id for a in approvers], pending.sequence_number, notification_context
                ))
            else:
                triggers.append(self._trigger(
                    instance, NotificationIntent.REQUEST_APPROVED, REQUESTOR_LABEL,
                    self._requestor_ids(instance, context), None, notification_context
                ))

            self.repository.save_instance(instance)

            latest = skipped_executions[-1] if skipped_executions else acknowledgment
            projected = self.synchronizer.project_with(
                template, instance.status, instance.current_sequence_number, latest
            )
            return TransitionResult(instance, acknowledgment, triggers, projected, skipped_executions)

        result = self.run_atomic(lock_key, unit)
        log_action(
            logger, "info",
            f"Started workflow {result.instance.id} for {lock_key}: {result.projected_status}",
            user_id=initiator.id, action="start", resource=lock_key
        )
        self.after_commit(result)
        return result

    def process_step(self, entity_id: str, entity_type: Any, action: str, actor: Actor,
                     comments: Optional[str] = None,
                     expected_sequence_number: Optional[int] = None,
                     expected_status: Optional[str] = None) -> TransitionResult:
        """
        Apply approve, reject or cancel to an entity's workflow.

        expected_sequence_number and expected_status bind the decision to the
        state the caller saw (the instance's sequence number or the projected
        "Pending <label>" status); a decision made against an older state fails.

        Raises:
            ValidationError: unknown action
            InstanceNotFoundError: the entity has no workflow instance
            TerminalStateError: the instance is already finished (nothing is written)
            StaleSequenceError: the instance moved past expected_sequence_number or expected_status
            UnauthorizedActorError: the actor may not act on the pending step
            MissingReasonError: reject without comments
            NoEligibleApproverError: nobody could act on the next step
        """
        action = (action or "").strip().lower()
        if action not in ACTIONS:
            raise ValidationError(f"Invalid action '{action}'. Expected one of: {', '.join(ACTIONS)}")
        entity_type = EntityType.parse(entity_type)
        comments = comments.strip() if comments else None
        lock_key = f"{entity_type.value}:{entity_id}"

        def unit() -> TransitionResult:
            instance = self.repository.find_for_entity(entity_id, entity_type)
            if instance is None:
                raise InstanceNotFoundError(
                    f"No workflow instance for {lock_key}",
                    {"entity_type": entity_type.value, "entity_id": entity_id}
                )
            if instance.status.is_terminal:
                raise TerminalStateError(
                    f"Workflow for {lock_key} is already {instance.status.value}",
                    {"status": instance.status.value}
                )
            if (expected_sequence_number is not None
                    and expected_sequence_number != instance.current_sequence_number):
                raise StaleSequenceError(
                    f"Workflow for {lock_key} is at sequence {instance.current_sequence_number}, "
                    f"not {expected_sequence_number}",
                    {"current_sequence_number": instance.current_sequence_number}
                )

            template = self._load_template(instance.template_id)
            if expected_status is not None:
                seen = self.synchronizer.project_with(
                    template, instance.status, instance.current_sequence_number, None
                )
                if seen != expected_status.strip():
                    raise StaleSequenceError(
                        f"Workflow for {lock_key} is '{seen}', not '{expected_status}'",
                        {"current_status": seen,
                         "current_sequence_number": instance.current_sequence_number}
                    )
            context = self.adapters.get(entity_type).read_approval_context(entity_id)
            step = pending_step(template, instance.current_sequence_number)

            if action == "cancel":
                allowed = (actor.id in (instance.initiated_by, context.requestor_id)
                           or actor.has_any_role(self.admin_roles))
            else:
                allowed = self.resolver.is_authorized(actor, step, context)
            if not allowed:
                log_action(
                    logger, "warning",
                    f"Actor {actor.id} may not {action} '{step.label}' on {lock_key}",
                    user_id=actor.id, action=action, resource=lock_key
                )
                raise UnauthorizedActorError(
                    f"{actor.name or actor.id} is not allowed to {action} step '{step.label}'",
                    {"sequence_number": step.sequence_number, "role_name": step.role_name}
                )
            if action == "reject" and not comments:
                raise MissingReasonError("Rejection comments are required.")

            now = datetime.now(timezone.utc)
            position = len(self.repository.executions_for(instance.id))
            notification_context = self._notification_context(
                context, step=step.label, actor_name=actor.name or actor.id, comments=comments
            )
            requestor_ids = self._requestor_ids(instance, context)
            skipped: List[StepDefinition] = []
            triggers: List[NotificationTrigger] = []
            approvers: Set[ActorIdentity] = set()

            if action == "approve":
                decision = Decision.APPROVED
                pending, skipped = self._settle(template, template.next_step(step), context)
                if pending is None:
                    instance.status = WorkflowStatus.APPROVED
                    instance.completed_at = now
                    if skipped:
                        instance.current_sequence_number = skipped[-1].sequence_number
                else:
                    approvers = self._require_approvers(pending, context)
                    instance.current_sequence_number = pending.sequence_number
            elif action == "reject":
                decision = Decision.REJECTED
                instance.status = WorkflowStatus.REJECTED
                instance.completed_at = now
            else:
                decision = Decision.CANCELLED
                instance.status = WorkflowStatus.CANCELLED
                instance.completed_at = now

            execution = self._execution(
                instance, position, step.sequence_number, step.role_name,
                actor, decision, comments, now
            )
            self._record(instance, execution, step.label)
            self.audit.log_event(
                {
                    Decision.APPROVED: AuditEventType.STEP_APPROVED,
                    Decision.REJECTED: AuditEventType.STEP_REJECTED,
                    Decision.CANCELLED: AuditEventType.INSTANCE_CANCELLED,
                }[decision],
                'workflow_instance',
                instance.id,
                {
                    'sequence_number': step.sequence_number,
                    'role_name': step.role_name,
                    'comments': comments
                },
                actor.id
            )
            skipped_executions = self._skip_executions(instance, skipped, position + 1, now)

            if instance.status == WorkflowStatus.IN_PROGRESS:
                next_step = template.step_at(instance.current_sequence_number)
                triggers.append(self._trigger(
                    instance, NotificationIntent.STEP_APPROVED, REQUESTOR_LABEL,
                    requestor_ids, step.sequence_number, notification_context
                ))
                triggers.append(self._trigger(
                    instance, NotificationIntent.APPROVAL_REQUIRED, next_step.label,
                    [a.id for a in approvers], next_step.sequence_number, notification_context
                ))
            elif instance.status == WorkflowStatus.APPROVED:
                self.audit.log_event(
                    AuditEventType.INSTANCE_COMPLETED,
                    'workflow_instance',
                    instance.id,
                    {'status': instance.status.value},
                    actor.id
                )
                triggers.append(self._trigger(
                    instance, NotificationIntent.REQUEST_APPROVED, REQUESTOR_LABEL,
                    requestor_ids, step.sequence_number, notification_context
                ))
            elif instance.status == WorkflowStatus.REJECTED:
                triggers.append(self._trigger(
                    instance, NotificationIntent.REQUEST_REJECTED, REQUESTOR_LABEL,
                    requestor_ids, step.sequence_number, notification_context
                ))
            else:
                recipients = set(requestor_ids) | {a.id for a in self.resolver.resolve(step, context)}
                recipients.discard(actor.id)
                triggers.append(self._trigger(
                    instance, NotificationIntent.REQUEST_CANCELLED, step.label,
                    recipients, step.sequence_number, notification_context
                ))

            instance.updated_at = now
            self.repository.save_instance(instance)

            latest = skipped_executions[-1] if skipped_executions else execution
            projected = self.synchronizer.project_with(
                template, instance.status, instance.current_sequence_number, latest
            )
            return TransitionResult(instance, execution, triggers, projected, skipped_executions)

        result = self.run_atomic(lock_key, unit)
        log_action(
            logger, "info",
            f"{action} on {lock_key} by {actor.id}: {result.projected_status}",
            user_id=actor.id, action=action, resource=lock_key,
            extra={"instance_id": result.instance.id,
                   "sequence_number": result.execution.sequence_number}
        )
        self.after_commit(result)
        return result

    def cancel(self, entity_id: str, entity_type: Any, actor: Actor,
               comments: Optional[str] = None) -> TransitionResult:
        """Cancel an in-progress workflow (requestor or administrator only)"""
        return self.process_step(entity_id, entity_type, "cancel", actor, comments)

    # Queries

    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        return self.repository.load_instance(instance_id)

    def get_instance_for_entity(self, entity_id: str, entity_type: Any) -> Optional[WorkflowInstance]:
        return self.repository.find_for_entity(entity_id, EntityType.parse(entity_type))

    def get_history(self, instance_id: str) -> List[StepExecution]:
        """Step executions of an instance in the order they were recorded"""
        return self.repository.executions_for(instance_id)

    def pending_step(self, instance: WorkflowInstance) -> Optional[StepDefinition]:
        """Step awaiting action, or None for finished instances"""
        if instance.status.is_terminal:
            return None
        return pending_step(self._load_template(instance.template_id), instance.current_sequence_number)

    def projected_status(self, instance: WorkflowInstance) -> str:
        return self.synchronizer.project(instance, self.repository.latest_execution(instance.id))

    def list_instances(self, status: Optional[WorkflowStatus] = None,
                       entity_type: Any = None) -> List[WorkflowInstance]:
        """List instances, newest first"""
        instances = self.repository.list_instances()
        if status is not None:
            instances = [i for i in instances if i.status == status]
        if entity_type is not None:
            entity_type = EntityType.parse(entity_type)
            instances = [i for i in instances if i.entity_type == entity_type]
        return instances

    def list_visible_instances(self, actor: Actor, status: Optional[WorkflowStatus] = None,
                               role: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Instances the actor may see, with their projected status.

        Administrators see everything. Others see instances they originated
        and instances whose pending step they may act on. ``role`` keeps only
        instances whose pending step has that role name or label.
        """
        is_admin = actor.has_any_role(self.admin_roles)
        rows = []
        for instance in self.list_instances(status=status):
            try:
                step = self.pending_step(instance)
                if role is not None and (step is None or role not in (step.role_name, step.label)):
                    continue

                visible = is_admin or actor.id == instance.initiated_by
                if not visible:
                    context = self.adapters.get(instance.entity_type).read_approval_context(instance.entity_id)
                    visible = actor.id == context.requestor_id
                    if not visible and step is not None:
                        visible = self.resolver.is_authorized(actor, step, context)
                if not visible:
                    continue

                rows.append({
                    'instance': instance,
                    'pending_step': step,
                    'projected_status': self.projected_status(instance),
                })
            except PortalError as e:
                logger.warning(f"Skipping {instance.entity_key} in listing: {e.message}")
        return rows

    # Recovery

    def resync_status(self, entity_id: str, entity_type: Any) -> str:
        """Re-project an entity's status from its workflow and write it"""
        instance = self.get_instance_for_entity(entity_id, entity_type)
        if instance is None:
            raise InstanceNotFoundError(f"No workflow instance for {EntityType.parse(entity_type).value}:{entity_id}")
        projected, _ = self.synchronizer.synchronize(instance, timeout=self.lock_timeout)
        return projected
