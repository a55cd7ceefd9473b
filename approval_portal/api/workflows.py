"""
Workflow instance endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import PortalSystem, get_current_actor, get_portal_system
from .schemas import (
    ProcessStepRequest,
    StartWorkflowRequest,
    execution_to_dict,
    instance_to_dict,
    step_to_dict,
    transition_to_dict
)
from ..exceptions import InstanceNotFoundError, ValidationError
from ..instances import WorkflowStatus
from ..roles import Actor


router = APIRouter()


def _parse_status(value: Optional[str]) -> Optional[WorkflowStatus]:
    if value is None:
        return None
    for member in WorkflowStatus:
        if value.lower() in (member.value.lower(), member.name.lower()):
            return member
    raise ValidationError(f"Unknown workflow status: {value}")


@router.post("/instances", status_code=status.HTTP_201_CREATED)
def start_workflow(
    request: StartWorkflowRequest,
    system: PortalSystem = Depends(get_portal_system)
):
    """Start the approval workflow for an entity"""
    initiator = system.actor_for(request.initiated_by)
    result = system.workflow_engine.start_instance(
        entity_id=request.entity_id,
        entity_type=request.entity_type,
        template_id=request.template_id,
        initiator=initiator,
        metadata=request.metadata
    )
    return transition_to_dict(result)


@router.post("/instances/process")
def process_step(
    request: ProcessStepRequest,
    system: PortalSystem = Depends(get_portal_system)
):
    """Approve, reject or cancel the pending step of a workflow instance"""
    engine = system.workflow_engine
    instance = engine.get_instance(request.execution_id)
    if instance is None:
        raise InstanceNotFoundError(f"Workflow instance {request.execution_id} not found")

    actor = system.actor_for(request.actor_taken_by)
    result = engine.process_step(
        entity_id=instance.entity_id,
        entity_type=instance.entity_type,
        action=request.action,
        actor=actor,
        comments=request.comments,
        expected_sequence_number=request.expected_sequence_number
    )
    return transition_to_dict(result)


@router.get("/instances")
def list_workflow_instances(
    role: Optional[str] = None,
    status: Optional[str] = None,
    actor: Actor = Depends(get_current_actor),
    system: PortalSystem = Depends(get_portal_system)
):
    """List instances visible to the caller with their projected status"""
    rows = system.workflow_engine.list_visible_instances(
        actor, status=_parse_status(status), role=role
    )
    return {
        "instances": [
            {
                **instance_to_dict(row["instance"]),
                "pendingStep": step_to_dict(row["pending_step"]),
                "projectedStatus": row["projected_status"],
            }
            for row in rows
        ],
        "count": len(rows)
    }


@router.get("/instances/{instance_id}")
def get_workflow_instance(
    instance_id: str,
    system: PortalSystem = Depends(get_portal_system)
):
    """Get an instance with its history and projected status"""
    engine = system.workflow_engine
    instance = engine.get_instance(instance_id)
    if instance is None:
        raise InstanceNotFoundError(f"Workflow instance {instance_id} not found")

    return {
        **instance_to_dict(instance),
        "pendingStep": step_to_dict(engine.pending_step(instance)),
        "projectedStatus": engine.projected_status(instance),
        "history": [execution_to_dict(e) for e in engine.get_history(instance_id)],
    }
