"""
Workflow Instance Records

The persistent state of a running approval: one WorkflowInstance per
(entity_id, entity_type) and its append-only log of StepExecution rows.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .adapters import EntityType
from .storage import StorageInterface, StorageRecord


class WorkflowStatus(Enum):
    """Status of a workflow instance"""
    IN_PROGRESS = "InProgress"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != WorkflowStatus.IN_PROGRESS


class Decision(Enum):
    """Decision recorded by a step execution"""
    APPROVED = "Approved"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"
    PROCESSED = "Processed"  # submission acknowledgment or conditional skip


@dataclass
class WorkflowInstance(StorageRecord):
    """Running (or finished) approval for one entity"""
    entity_id: str
    entity_type: EntityType
    template_id: str
    current_sequence_number: int
    status: WorkflowStatus
    initiated_by: str
    initiated_at: datetime
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def entity_key(self) -> str:
        """Lock key shared by every action on this instance"""
        return f"{self.entity_type.value}:{self.entity_id}"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['entity_type'] = self.entity_type.value
        data['status'] = self.status.value
        data['initiated_at'] = self.initiated_at.isoformat()
        data['completed_at'] = self.completed_at.isoformat() if self.completed_at else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowInstance':
        data = dict(data)
        data['entity_type'] = EntityType.parse(data['entity_type'])
        data['status'] = WorkflowStatus(data['status'])
        data['initiated_at'] = datetime.fromisoformat(data['initiated_at'])
        if data.get('completed_at'):
            data['completed_at'] = datetime.fromisoformat(data['completed_at'])
        return super().from_dict(data)


@dataclass
class StepExecution(StorageRecord):
    """One immutable decision in an instance's history"""
    instance_id: str
    position: int  # order within the instance, starting at 0
    sequence_number: int
    role_name: str
    actor_id: str
    actor_name: str
    decision: Decision
    timestamp: datetime
    comments: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['decision'] = self.decision.value
        data['timestamp'] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepExecution':
        data = dict(data)
        data['decision'] = Decision(data['decision'])
        data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        return super().from_dict(data)


class InstanceRepository:
    """Storage access for instances and their executions"""

    INSTANCES_TABLE = "workflow_instances"
    EXECUTIONS_TABLE = "workflow_step_executions"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def save_instance(self, instance: WorkflowInstance) -> None:
        self.storage.save(self.INSTANCES_TABLE, instance.id, instance.to_dict())

    def load_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        data = self.storage.load(self.INSTANCES_TABLE, instance_id)
        if not data:
            return None
        return WorkflowInstance.from_dict(data)

    def find_for_entity(self, entity_id: str, entity_type: EntityType) -> Optional[WorkflowInstance]:
        rows = self.storage.find(self.INSTANCES_TABLE, {
            'entity_id': entity_id,
            'entity_type': entity_type.value
        })
        if not rows:
            return None
        return WorkflowInstance.from_dict(rows[0])

    def list_instances(self) -> List[WorkflowInstance]:
        instances = [WorkflowInstance.from_dict(d) for d in self.storage.load_all(self.INSTANCES_TABLE)]
        return sorted(instances, key=lambda i: i.initiated_at, reverse=True)

    def append_execution(self, execution: StepExecution) -> None:
        if self.storage.exists(self.EXECUTIONS_TABLE, execution.id):
            raise ValueError(f"Step execution {execution.id} already recorded")
        self.storage.save(self.EXECUTIONS_TABLE, execution.id, execution.to_dict())

    def executions_for(self, instance_id: str) -> List[StepExecution]:
        rows = self.storage.find(self.EXECUTIONS_TABLE, {'instance_id': instance_id})
        return sorted((StepExecution.from_dict(r) for r in rows), key=lambda e: e.position)

    def latest_execution(self, instance_id: str) -> Optional[StepExecution]:
        executions = self.executions_for(instance_id)
        return executions[-1] if executions else None
