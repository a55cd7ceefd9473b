"""
Entity Adapter Module

Per-entity-type access to the business records the workflow engine governs
(travel requests, expense claims, visa applications, accommodation and
transport requests). Each adapter knows its entity table, the legacy
``<entity>_approval_steps`` table and the legacy column names of both.

The ``status`` column and the legacy approval-steps rows are derived caches;
the workflow instance and its step executions are the system of record.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from .exceptions import EntityNotFoundError, ValidationError
from .storage import StorageInterface


# Actor id used for executions the engine records on its own behalf
SYSTEM_ACTOR_ID = "system"


class EntityType(Enum):
    """Entity types that can carry an approval workflow"""
    TRF = "TRF"
    CLAIM = "Claim"
    VISA = "Visa"
    ACCOMMODATION = "Accommodation"
    TRANSPORT = "Transport"

    @classmethod
    def parse(cls, value: Any) -> 'EntityType':
        """Accept an EntityType, its value, or its value in any letter case"""
        if isinstance(value, cls):
            return value
        for member in cls:
            if str(value).lower() in (member.value.lower(), member.name.lower()):
                return member
        raise ValidationError(f"Unknown entity type: {value}")


@dataclass
class EntityContext:
    """What the workflow needs to know about an entity to route its approval"""
    entity_id: str
    entity_type: EntityType
    requestor_id: Optional[str]
    requestor_name: Optional[str]
    department: Optional[str]
    cost_center: Optional[str] = None
    status: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)


def legacy_step_status(decision: Any, actor_id: str) -> str:
    """Status string written to a legacy approval-steps row for a decision"""
    value = getattr(decision, 'value', decision)
    if value == "Processed":
        return "Not Required" if actor_id == SYSTEM_ACTOR_ID else "Submitted"
    return value


class EntityAdapter:
    """
    Base adapter over one entity table and its legacy approval-steps table.

    Subclasses set the table names and, where the legacy schema differs, the
    column names.
    """

    entity_type: EntityType
    table: str
    steps_table: str
    steps_fk: str

    requestor_id_column = "staff_id"
    requestor_name_column = "requestor_name"
    department_column = "department"
    cost_center_column = "cost_center"

    # Legacy approval-steps columns: role, name, status, date, comments
    step_columns = {
        "role": "step_role",
        "name": "step_name",
        "status": "status",
        "date": "step_date",
        "comments": "comments",
    }

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def create_entity(self, entity_id: str, requestor_id: str, requestor_name: str,
                      department: Optional[str] = None, cost_center: Optional[str] = None,
                      status: str = "Draft", **fields) -> Dict[str, Any]:
        """Insert an entity row using this table's column names"""
        if self.storage.exists(self.table, entity_id):
            raise ValidationError(f"{self.entity_type.value} {entity_id} already exists")

        now = datetime.now(timezone.utc).isoformat()
        row = dict(fields)
        row.update({
            "id": entity_id,
            self.requestor_id_column: requestor_id,
            self.requestor_name_column: requestor_name,
            self.department_column: department,
            self.cost_center_column: cost_center,
            "status": status,
            "created_at": now,
            "updated_at": now,
        })
        self.storage.save(self.table, entity_id, row)
        return row

    def _load(self, entity_id: str) -> Dict[str, Any]:
        row = self.storage.load(self.table, entity_id)
        if row is None:
            raise EntityNotFoundError(
                f"{self.entity_type.value} {entity_id} not found",
                {"entity_type": self.entity_type.value, "entity_id": entity_id}
            )
        return row

    def exists(self, entity_id: str) -> bool:
        return self.storage.exists(self.table, entity_id)

    def read_status(self, entity_id: str) -> Optional[str]:
        return self._load(entity_id).get("status")

    def write_status(self, entity_id: str, projected_status: str) -> bool:
        """
        Write the projected status into the entity's status column.

        Returns False when the column already holds that value.
        """
        row = self._load(entity_id)
        if row.get("status") == projected_status:
            return False
        row["status"] = projected_status
        row["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table, entity_id, row)
        return True

    def read_approval_context(self, entity_id: str) -> EntityContext:
        row = self._load(entity_id)
        return EntityContext(
            entity_id=entity_id,
            entity_type=self.entity_type,
            requestor_id=row.get(self.requestor_id_column),
            requestor_name=row.get(self.requestor_name_column),
            department=row.get(self.department_column),
            cost_center=row.get(self.cost_center_column),
            status=row.get("status"),
            fields=row
        )

    def record_legacy_step(self, entity_id: str, execution: Any,
                           step_role: Optional[str] = None) -> Dict[str, Any]:
        """Mirror a step execution into the legacy approval-steps table"""
        columns = self.step_columns
        timestamp = execution.timestamp
        row = {
            "id": execution.id,
            self.steps_fk: entity_id,
            columns["role"]: step_role or execution.role_name,
            columns["name"]: execution.actor_name,
            columns["status"]: legacy_step_status(execution.decision, execution.actor_id),
            columns["date"]: timestamp.isoformat() if isinstance(timestamp, datetime) else timestamp,
            columns["comments"]: execution.comments,
        }
        self.storage.save(self.steps_table, row["id"], row)
        return row

    def read_legacy_steps(self, entity_id: str) -> List[Dict[str, Any]]:
        """Legacy approval rows for an entity, oldest first, in legacy column names"""
        rows = self.storage.find(self.steps_table, {self.steps_fk: entity_id})
        return sorted(rows, key=lambda r: r.get(self.step_columns["date"]) or "")

    def normalize_legacy_step(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Map a legacy approval row onto role/name/status/date/comments keys"""
        return {key: row.get(column) for key, column in self.step_columns.items()}

    def insert_legacy_step(self, entity_id: str, role: str, name: str, status: str,
                           comments: Optional[str] = None,
                           date: Optional[datetime] = None) -> Dict[str, Any]:
        """Write a legacy approval row the way the old action handlers did"""
        columns = self.step_columns
        row = {
            "id": str(uuid.uuid4()),
            self.steps_fk: entity_id,
            columns["role"]: role,
            columns["name"]: name,
            columns["status"]: status,
            columns["date"]: (date or datetime.now(timezone.utc)).isoformat(),
            columns["comments"]: comments,
        }
        self.storage.save(self.steps_table, row["id"], row)
        return row


class TRFAdapter(EntityAdapter):
    entity_type = EntityType.TRF
    table = "travel_requests"
    steps_table = "trf_approval_steps"
    steps_fk = "trf_id"


class ClaimAdapter(EntityAdapter):
    entity_type = EntityType.CLAIM
    table = "expense_claims"
    steps_table = "claims_approval_steps"
    steps_fk = "claim_id"

    requestor_id_column = "staff_no"
    requestor_name_column = "staff_name"
    department_column = "department_code"
    cost_center_column = "dept_cost_center_code"


class VisaAdapter(EntityAdapter):
    entity_type = EntityType.VISA
    table = "visa_applications"
    steps_table = "visa_approval_steps"
    steps_fk = "visa_id"


class AccommodationAdapter(EntityAdapter):
    entity_type = EntityType.ACCOMMODATION
    table = "accommodation_requests"
    steps_table = "accommodation_approval_steps"
    steps_fk = "accommodation_request_id"


class TransportAdapter(EntityAdapter):
    entity_type = EntityType.TRANSPORT
    table = "transport_requests"
    steps_table = "transport_approval_steps"
    steps_fk = "transport_request_id"

    step_columns = {
        "role": "role",
        "name": "name",
        "status": "status",
        "date": "date",
        "comments": "comments",
    }


DEFAULT_ADAPTERS = (TRFAdapter, ClaimAdapter, VisaAdapter, AccommodationAdapter, TransportAdapter)


class AdapterRegistry:
    """Entity type to adapter lookup"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self._adapters: Dict[EntityType, EntityAdapter] = {}
        for adapter_class in DEFAULT_ADAPTERS:
            self.register(adapter_class(storage))

    def register(self, adapter: EntityAdapter) -> None:
        self._adapters[adapter.entity_type] = adapter

    def get(self, entity_type: Any) -> EntityAdapter:
        entity_type = EntityType.parse(entity_type)
        adapter = self._adapters.get(entity_type)
        if adapter is None:
            raise ValidationError(f"No adapter registered for {entity_type.value}")
        return adapter

    def __iter__(self) -> Iterator[EntityAdapter]:
        return iter(self._adapters.values())
