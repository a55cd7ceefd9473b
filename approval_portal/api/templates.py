"""
Workflow template endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from .auth import PortalSystem, get_portal_system
from .schemas import CreateTemplateRequest, template_to_dict


router = APIRouter()


@router.get("")
def list_templates(
    entity_type: Optional[str] = None,
    active_only: bool = False,
    system: PortalSystem = Depends(get_portal_system)
):
    """List workflow templates"""
    templates = system.template_store.list_templates(entity_type, active_only=active_only)
    return {
        "templates": [template_to_dict(t) for t in templates],
        "count": len(templates)
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_template(
    request: CreateTemplateRequest,
    system: PortalSystem = Depends(get_portal_system)
):
    """Create a template; it replaces the entity type's active template"""
    template = system.template_store.create_template(
        name=request.name,
        entity_type=request.entity_type,
        steps=[step.to_step() for step in request.steps],
        created_by=request.created_by,
        is_active=request.is_active
    )
    return template_to_dict(template)


@router.get("/{template_id}")
def get_template(
    template_id: str,
    system: PortalSystem = Depends(get_portal_system)
):
    """Get template by ID"""
    template = system.template_store.get_template(template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    return template_to_dict(template)
