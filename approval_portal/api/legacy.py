"""
Legacy action endpoints

Older portal pages post status actions per entity; these routes send them
through the workflow engine.
"""

from fastapi import APIRouter, Depends

from .auth import PortalSystem, get_portal_system
from .schemas import AdoptRequest, LegacyActionRequest, instance_to_dict, transition_to_dict


router = APIRouter()


@router.post("/{entity_type}/{entity_id}/action")
def legacy_action(
    entity_type: str,
    entity_id: str,
    request: LegacyActionRequest,
    system: PortalSystem = Depends(get_portal_system)
):
    """Apply a legacy action, adopting the entity's legacy state first if needed"""
    actor = system.actor_for(request.approver_id)
    result = system.legacy_bridge.perform_action(
        entity_type, entity_id, request.action, actor, request.comments,
        expected_status=request.expected_status,
        expected_sequence_number=request.expected_sequence_number
    )
    return transition_to_dict(result)


@router.post("/{entity_type}/{entity_id}/adopt")
def adopt_entity(
    entity_type: str,
    entity_id: str,
    request: AdoptRequest,
    system: PortalSystem = Depends(get_portal_system)
):
    """Create a workflow instance from an entity's legacy status"""
    actor = system.actor_for(request.adopted_by)
    instance = system.legacy_bridge.adopt(entity_type, entity_id, actor)
    return {
        **instance_to_dict(instance),
        "projectedStatus": system.workflow_engine.projected_status(instance),
    }
