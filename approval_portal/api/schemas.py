"""
Pydantic schemas for API requests and responses
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..instances import StepExecution, WorkflowInstance
from ..legacy import DECISION_ACTIONS
from ..notifications import NotificationTrigger
from ..templates import RoleResolution, StepDefinition, WorkflowTemplate


class CamelModel(BaseModel):
    """Accepts camelCase keys from portal clients and snake_case from Python callers"""
    model_config = ConfigDict(populate_by_name=True)


# Workflow instance schemas
class StartWorkflowRequest(CamelModel):
    template_id: Optional[str] = Field(None, alias="templateId")
    entity_id: str = Field(..., alias="entityId")
    entity_type: str = Field(..., alias="entityType")
    initiated_by: str = Field(..., alias="initiatedBy")
    metadata: Optional[Dict[str, Any]] = None


class ProcessStepRequest(CamelModel):
    execution_id: str = Field(..., alias="executionId", description="Workflow instance id")
    action: str = Field(..., description="approve, reject or cancel")
    actor_taken_by: str = Field(..., alias="actorTakenBy")
    comments: Optional[str] = None
    expected_sequence_number: Optional[int] = Field(None, alias="expectedSequenceNumber")

    @model_validator(mode="after")
    def require_sequence_for_decisions(self) -> "ProcessStepRequest":
        # Binds approve and reject to the step the caller was shown
        if self.action.strip().lower() in DECISION_ACTIONS and self.expected_sequence_number is None:
            raise ValueError("expectedSequenceNumber is required to approve or reject")
        return self


# Template schemas
class StepDefinitionModel(CamelModel):
    sequence_number: int = Field(..., alias="sequenceNumber")
    role_name: str = Field(..., alias="roleName")
    is_terminal: bool = Field(False, alias="isTerminal")
    on_approve_next_sequence: Optional[int] = Field(None, alias="onApproveNextSequence")
    on_reject_status: str = Field("Rejected", alias="onRejectStatus")
    resolution: RoleResolution = RoleResolution.LITERAL
    display_name: Optional[str] = Field(None, alias="displayName")
    skip_when: Dict[str, Any] = Field(default_factory=dict, alias="skipWhen")

    def to_step(self) -> StepDefinition:
        return StepDefinition(
            sequence_number=self.sequence_number,
            role_name=self.role_name,
            is_terminal=self.is_terminal,
            on_approve_next_sequence=self.on_approve_next_sequence,
            on_reject_status=self.on_reject_status,
            resolution=self.resolution,
            display_name=self.display_name,
            skip_when=dict(self.skip_when)
        )


class CreateTemplateRequest(CamelModel):
    name: str
    entity_type: str = Field(..., alias="entityType")
    steps: List[StepDefinitionModel]
    is_active: bool = Field(True, alias="isActive")
    created_by: str = Field("system", alias="createdBy")


# Legacy schemas
class LegacyActionRequest(CamelModel):
    action: str = Field(..., description="approve, reject, cancel or a legacy alias such as verify")
    comments: Optional[str] = None
    approver_id: str = Field(..., alias="approverId")
    expected_status: Optional[str] = Field(
        None, alias="expectedStatus", description="Status the approver was shown, e.g. Pending HOD"
    )
    expected_sequence_number: Optional[int] = Field(None, alias="expectedSequenceNumber")


class AdoptRequest(CamelModel):
    adopted_by: str = Field(..., alias="adoptedBy")


# Response helpers
def step_to_dict(step: Optional[StepDefinition]) -> Optional[Dict[str, Any]]:
    if step is None:
        return None
    return {
        "sequenceNumber": step.sequence_number,
        "roleName": step.role_name,
        "label": step.label,
        "isTerminal": step.is_terminal,
        "onApproveNextSequence": step.on_approve_next_sequence,
        "onRejectStatus": step.on_reject_status,
        "resolution": step.resolution.value,
        "skipWhen": step.skip_when,
    }


def template_to_dict(template: WorkflowTemplate) -> Dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "entityType": template.entity_type.value,
        "isActive": template.is_active,
        "createdBy": template.created_by,
        "createdAt": template.created_at.isoformat(),
        "steps": [step_to_dict(s) for s in sorted(template.steps, key=lambda s: s.sequence_number)],
    }


def instance_to_dict(instance: WorkflowInstance) -> Dict[str, Any]:
    return {
        "id": instance.id,
        "entityId": instance.entity_id,
        "entityType": instance.entity_type.value,
        "templateId": instance.template_id,
        "currentSequenceNumber": instance.current_sequence_number,
        "status": instance.status.value,
        "initiatedBy": instance.initiated_by,
        "initiatedAt": instance.initiated_at.isoformat(),
        "completedAt": instance.completed_at.isoformat() if instance.completed_at else None,
        "metadata": instance.metadata,
    }


def execution_to_dict(execution: StepExecution) -> Dict[str, Any]:
    return {
        "id": execution.id,
        "position": execution.position,
        "sequenceNumber": execution.sequence_number,
        "roleName": execution.role_name,
        "actorId": execution.actor_id,
        "actorName": execution.actor_name,
        "decision": execution.decision.value,
        "timestamp": execution.timestamp.isoformat(),
        "comments": execution.comments,
    }


def trigger_to_dict(trigger: NotificationTrigger) -> Dict[str, Any]:
    return {
        "id": trigger.id,
        "intent": trigger.intent.value,
        "recipientRole": trigger.recipient_role,
        "recipientIds": trigger.recipient_ids,
        "sequenceNumber": trigger.sequence_number,
    }


def transition_to_dict(result: Any) -> Dict[str, Any]:
    """Body returned by every endpoint that changes workflow state"""
    return {
        "instance": instance_to_dict(result.instance),
        "execution": execution_to_dict(result.execution),
        "skipped": [execution_to_dict(e) for e in result.skipped],
        "projectedStatus": result.projected_status,
        "triggers": [trigger_to_dict(t) for t in result.triggers],
    }
