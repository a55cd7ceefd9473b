"""
Workflow Template Module

Template-driven approval chains. A template is an ordered list of step
definitions for one entity type; each step names the role that acts on it,
how that role is resolved to people, and where approval leads next.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import uuid

from .adapters import EntityType
from .audit import AuditEventType, AuditTrail
from .exceptions import TemplateIntegrityError, ValidationError
from .storage import StorageInterface, StorageRecord


REQUESTOR_KEY = "requestor"


def template_lock_key(template_id: str) -> str:
    """Lock key serializing step changes with instances binding to the template"""
    return f"workflow_template:{template_id}"


class RoleResolution(Enum):
    """How a step's role_name is turned into the set of people who may act"""
    LITERAL = "literal"
    DEPARTMENT_SCOPED = "department_scoped"
    DYNAMIC_LOOKUP = "dynamic_lookup"


def _number(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return value


SKIP_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "lte": lambda actual, expected: _number(actual) <= _number(expected),
    "lt": lambda actual, expected: _number(actual) < _number(expected),
    "gte": lambda actual, expected: _number(actual) >= _number(expected),
    "gt": lambda actual, expected: _number(actual) > _number(expected),
    "in": lambda actual, expected: actual in expected,
    "not_in": lambda actual, expected: actual not in expected,
    "ne": lambda actual, expected: actual != expected,
}


def condition_holds(key: str, expected: Any, fields: Dict[str, Any]) -> bool:
    """
    Evaluate one skip condition such as ``estimated_cost__lte: 1000``.

    A missing field never satisfies a condition.
    """
    name, operator = key, None
    if "__" in key:
        head, _, tail = key.rpartition("__")
        if tail in SKIP_OPERATORS:
            name, operator = head, tail

    if name not in fields or fields[name] is None:
        return False

    actual = fields[name]
    if operator is None:
        return actual == expected
    try:
        return SKIP_OPERATORS[operator](actual, expected)
    except TypeError:
        return False


@dataclass
class StepDefinition:
    """Definition of a single workflow step"""
    sequence_number: int
    role_name: str
    is_terminal: bool = False
    on_approve_next_sequence: Optional[int] = None
    on_reject_status: str = "Rejected"
    resolution: RoleResolution = RoleResolution.LITERAL
    display_name: Optional[str] = None
    skip_when: Dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        """Label used in the "Pending <label>" entity status"""
        return self.display_name or self.role_name

    @property
    def is_requestor_step(self) -> bool:
        return (self.resolution == RoleResolution.DYNAMIC_LOOKUP
                and self.role_name == REQUESTOR_KEY)

    def should_skip(self, fields: Dict[str, Any]) -> bool:
        """True when every skip condition holds for the entity's fields"""
        if not self.skip_when:
            return False
        return all(condition_holds(key, expected, fields)
                   for key, expected in self.skip_when.items())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence_number': self.sequence_number,
            'role_name': self.role_name,
            'is_terminal': self.is_terminal,
            'on_approve_next_sequence': self.on_approve_next_sequence,
            'on_reject_status': self.on_reject_status,
            'resolution': self.resolution.value,
            'display_name': self.display_name,
            'skip_when': self.skip_when,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepDefinition':
        return cls(
            sequence_number=data['sequence_number'],
            role_name=data['role_name'],
            is_terminal=data.get('is_terminal', False),
            on_approve_next_sequence=data.get('on_approve_next_sequence'),
            on_reject_status=data.get('on_reject_status') or "Rejected",
            resolution=RoleResolution(data.get('resolution', RoleResolution.LITERAL.value)),
            display_name=data.get('display_name'),
            skip_when=data.get('skip_when') or {},
        )


def validate_steps(steps: List[StepDefinition]) -> None:
    """
    Check a step list forms a single linear chain.

    Raises:
        TemplateIntegrityError: describing the first problem found
    """
    if not steps:
        raise TemplateIntegrityError("Template must have at least one step")

    numbers = [step.sequence_number for step in steps]
    if len(set(numbers)) != len(numbers):
        raise TemplateIntegrityError("Step sequence numbers must be unique")
    if numbers != sorted(numbers):
        raise TemplateIntegrityError("Step sequence numbers must be strictly increasing")

    by_number = {step.sequence_number: step for step in steps}
    terminals = [step for step in steps if step.on_approve_next_sequence is None]
    if len(terminals) != 1 or terminals[0] is not steps[-1]:
        raise TemplateIntegrityError("Exactly one terminal step is required and it must be the last step")

    for step in steps:
        if step.is_terminal != (step.on_approve_next_sequence is None):
            raise TemplateIntegrityError(
                f"Step {step.sequence_number}: is_terminal must be set exactly when there is no next step"
            )
        if step.on_approve_next_sequence is not None:
            if step.on_approve_next_sequence not in by_number:
                raise TemplateIntegrityError(
                    f"Step {step.sequence_number} points to missing step {step.on_approve_next_sequence}"
                )
            if step.on_approve_next_sequence <= step.sequence_number:
                raise TemplateIntegrityError(
                    f"Step {step.sequence_number} must point to a later step"
                )
        if step.is_requestor_step and (step is not steps[0] or step.is_terminal):
            raise TemplateIntegrityError("A requestor step may only be the first, non-terminal step")
        if not step.role_name:
            raise TemplateIntegrityError(f"Step {step.sequence_number} has no role")

    # Walk the chain from the first step; it must reach every step
    visited = []
    current: Optional[StepDefinition] = steps[0]
    while current is not None:
        visited.append(current.sequence_number)
        next_number = current.on_approve_next_sequence
        current = by_number[next_number] if next_number is not None else None
    if len(visited) != len(steps):
        raise TemplateIntegrityError("Approval chain does not visit every step")


@dataclass
class WorkflowTemplate(StorageRecord):
    """Approval chain for one entity type"""
    name: str
    entity_type: EntityType
    steps: List[StepDefinition]
    is_active: bool = True
    created_by: str = ""

    @property
    def first_step(self) -> StepDefinition:
        return min(self.steps, key=lambda s: s.sequence_number)

    def step_at(self, sequence_number: int) -> StepDefinition:
        """
        Step with the given sequence number.

        Raises:
            TemplateIntegrityError: if no step or more than one step matches
        """
        matches = [s for s in self.steps if s.sequence_number == sequence_number]
        if len(matches) != 1:
            raise TemplateIntegrityError(
                f"Template {self.id} has {len(matches)} steps at sequence {sequence_number}",
                {"template_id": self.id, "sequence_number": sequence_number}
            )
        return matches[0]

    def next_step(self, step: StepDefinition) -> Optional[StepDefinition]:
        if step.on_approve_next_sequence is None:
            return None
        return self.step_at(step.on_approve_next_sequence)

    def validate(self) -> None:
        validate_steps(self.steps)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['entity_type'] = self.entity_type.value
        data['steps'] = [step.to_dict() for step in self.steps]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowTemplate':
        data = dict(data)
        data['entity_type'] = EntityType.parse(data['entity_type'])
        data['steps'] = [StepDefinition.from_dict(s) for s in data.get('steps', [])]
        return super().from_dict(data)


class TemplateStore:
    """Stores templates; one active template per entity type"""

    TABLE = "workflow_templates"
    INSTANCES_TABLE = "workflow_instances"

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit = audit_trail or AuditTrail(storage)

    def _save(self, template: WorkflowTemplate) -> None:
        self.storage.save(self.TABLE, template.id, template.to_dict())

    def create_template(self, name: str, entity_type: Any, steps: List[StepDefinition],
                        created_by: str = "system", is_active: bool = True,
                        template_id: Optional[str] = None) -> WorkflowTemplate:
        """
        Create a template.

        Creating an active template deactivates the entity type's previous
        active template; instances already started keep their template.

        Raises:
            ValidationError: if the steps do not form a valid chain, or a
                template with template_id already exists
        """
        entity_type = EntityType.parse(entity_type)
        try:
            validate_steps(steps)
        except TemplateIntegrityError as e:
            raise ValidationError(f"Invalid template steps: {e.message}") from e

        now = datetime.now(timezone.utc)
        template = WorkflowTemplate(
            id=template_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            entity_type=entity_type,
            steps=list(steps),
            is_active=is_active,
            created_by=created_by
        )

        with self.storage.atomic(lock_key=template_lock_key(template.id)):
            if self.storage.exists(self.TABLE, template.id):
                raise ValidationError(
                    f"Template {template.id} already exists",
                    {"template_id": template.id}
                )
            if is_active:
                for existing in self.list_templates(entity_type, active_only=True):
                    self._set_active(existing, False, created_by)
            self._save(template)
            self.audit.log_event(
                AuditEventType.TEMPLATE_CREATED,
                'workflow_template',
                template.id,
                {'name': name, 'entity_type': entity_type.value, 'steps': steps},
                created_by
            )

        return template

    def get_template(self, template_id: str) -> Optional[WorkflowTemplate]:
        data = self.storage.load(self.TABLE, template_id)
        if not data:
            return None
        return WorkflowTemplate.from_dict(data)

    def get_active_template(self, entity_type: Any) -> Optional[WorkflowTemplate]:
        """The active template for an entity type, newest first if several"""
        templates = self.list_templates(entity_type, active_only=True)
        if not templates:
            return None
        return max(templates, key=lambda t: t.created_at)

    def list_templates(self, entity_type: Any = None, active_only: bool = False) -> List[WorkflowTemplate]:
        templates = [WorkflowTemplate.from_dict(d) for d in self.storage.load_all(self.TABLE)]
        if entity_type is not None:
            entity_type = EntityType.parse(entity_type)
            templates = [t for t in templates if t.entity_type == entity_type]
        if active_only:
            templates = [t for t in templates if t.is_active]
        return sorted(templates, key=lambda t: t.name)

    def is_referenced(self, template_id: str) -> bool:
        return bool(self.storage.find(self.INSTANCES_TABLE, {'template_id': template_id}))

    def replace_steps(self, template_id: str, steps: List[StepDefinition],
                      updated_by: str = "system") -> WorkflowTemplate:
        """
        Replace the steps of a template no instance has used yet.

        Raises:
            ValidationError: unknown template or invalid steps
            TemplateIntegrityError: the template is referenced by an instance
        """
        try:
            validate_steps(steps)
        except TemplateIntegrityError as e:
            raise ValidationError(f"Invalid template steps: {e.message}") from e

        with self.storage.atomic(lock_key=template_lock_key(template_id)):
            template = self.get_template(template_id)
            if not template:
                raise ValidationError(f"Template {template_id} not found")
            # Checked under the template lock, so no instance can bind in between
            if self.is_referenced(template_id):
                raise TemplateIntegrityError(
                    f"Template {template_id} is used by workflow instances and cannot change",
                    {"template_id": template_id}
                )

            template.steps = list(steps)
            template.updated_at = datetime.now(timezone.utc)
            self._save(template)
            self.audit.log_event(
                AuditEventType.TEMPLATE_STEPS_REPLACED,
                'workflow_template',
                template.id,
                {'steps': steps},
                updated_by
            )
        return template

    def _set_active(self, template: WorkflowTemplate, is_active: bool, changed_by: str) -> None:
        template.is_active = is_active
        template.updated_at = datetime.now(timezone.utc)
        self._save(template)
        if not is_active:
            self.audit.log_event(
                AuditEventType.TEMPLATE_DEACTIVATED,
                'workflow_template',
                template.id,
                {'entity_type': template.entity_type.value},
                changed_by
            )

    def deactivate_template(self, template_id: str, deactivated_by: str = "system") -> bool:
        template = self.get_template(template_id)
        if not template:
            return False
        with self.storage.atomic():
            self._set_active(template, False, deactivated_by)
        return True
