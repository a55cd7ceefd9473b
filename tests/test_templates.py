"""
Test suite for workflow templates

Tests chain validation, skip conditions, template storage and the one active
template per entity type rule.
"""

import threading
import time
from datetime import datetime, timezone

import pytest

from approval_portal.adapters import EntityType
from approval_portal.exceptions import TemplateIntegrityError, ValidationError
from approval_portal.instances import InstanceRepository
from approval_portal.templates import (
    RoleResolution, StepDefinition, WorkflowTemplate, condition_holds, template_lock_key, validate_steps
)


def chain(*roles):
    """Linear chain over the given literal roles"""
    steps = []
    for index, role in enumerate(roles):
        is_last = index == len(roles) - 1
        steps.append(StepDefinition(
            sequence_number=index + 1,
            role_name=role,
            is_terminal=is_last,
            on_approve_next_sequence=None if is_last else index + 2
        ))
    return steps


class TestValidateSteps:
    """Test approval chain validation"""

    def test_valid_chain(self):
        validate_steps(chain("Department Focal", "HOD", "Finance Clerk"))

    def test_requestor_first(self):
        """Test a requestor step is allowed at the head of the chain"""
        steps = [
            StepDefinition(1, "requestor", on_approve_next_sequence=2,
                           resolution=RoleResolution.DYNAMIC_LOOKUP),
            StepDefinition(2, "HOD", is_terminal=True),
        ]
        validate_steps(steps)

    @pytest.mark.parametrize("steps,message", [
        ([], "at least one step"),
        ([StepDefinition(1, "A", on_approve_next_sequence=1), StepDefinition(1, "B", is_terminal=True)],
         "unique"),
        ([StepDefinition(2, "A", on_approve_next_sequence=1), StepDefinition(1, "B", is_terminal=True)],
         "increasing"),
        ([StepDefinition(1, "A", is_terminal=True), StepDefinition(2, "B", is_terminal=True)],
         "Exactly one terminal"),
        ([StepDefinition(1, "A", on_approve_next_sequence=5), StepDefinition(2, "B", is_terminal=True)],
         "missing step"),
        ([StepDefinition(1, "A", on_approve_next_sequence=2), StepDefinition(2, "B")],
         "is_terminal"),
        ([StepDefinition(1, "A", on_approve_next_sequence=3),
          StepDefinition(2, "B", on_approve_next_sequence=3),
          StepDefinition(3, "C", is_terminal=True)],
         "does not visit every step"),
        ([StepDefinition(1, "HOD", on_approve_next_sequence=2),
          StepDefinition(2, "requestor", is_terminal=True, resolution=RoleResolution.DYNAMIC_LOOKUP)],
         "requestor step"),
    ])
    def test_invalid_chains(self, steps, message):
        """Test each malformed chain is rejected with a useful message"""
        with pytest.raises(TemplateIntegrityError) as exc_info:
            validate_steps(steps)
        assert message in exc_info.value.message


class TestSkipConditions:
    """Test conditional step skipping"""

    @pytest.mark.parametrize("key,expected,fields,holds", [
        ("estimated_cost__lte", 1000, {"estimated_cost": 1000}, True),
        ("estimated_cost__lte", 1000, {"estimated_cost": "999.50"}, True),
        ("estimated_cost__lte", 1000, {"estimated_cost": 1000.01}, False),
        ("estimated_cost__gt", 1000, {"estimated_cost": 5000}, True),
        ("travel_type__not_in", ["Overseas"], {"travel_type": "Local"}, True),
        ("travel_type__in", ["Overseas"], {"travel_type": "Local"}, False),
        ("travel_type", "Local", {"travel_type": "Local"}, True),
        ("travel_type__ne", "Local", {"travel_type": "Local"}, False),
        ("estimated_cost__lte", 1000, {}, False),
        ("estimated_cost__lte", 1000, {"estimated_cost": None}, False),
        ("estimated_cost__lte", 1000, {"estimated_cost": "not a number"}, False),
    ])
    def test_condition_holds(self, key, expected, fields, holds):
        assert condition_holds(key, expected, fields) is holds

    def test_all_conditions_must_hold(self):
        """Test a step is skipped only when every condition holds"""
        step = StepDefinition(3, "HOD", is_terminal=True, skip_when={
            "travel_type__not_in": ["Overseas", "Home Leave Passage"],
            "estimated_cost__lte": 1000,
        })

        assert step.should_skip({"travel_type": "Local", "estimated_cost": 500})
        assert not step.should_skip({"travel_type": "Overseas", "estimated_cost": 500})
        assert not step.should_skip({"travel_type": "Local", "estimated_cost": 1500})
        assert not StepDefinition(1, "HOD", is_terminal=True).should_skip({"estimated_cost": 0})


class TestWorkflowTemplate:
    """Test template navigation and serialization"""

    def make_template(self, steps):
        now = datetime.now(timezone.utc)
        return WorkflowTemplate(id="tpl-1", created_at=now, updated_at=now, name="Test",
                                entity_type=EntityType.TRF, steps=steps)

    def test_navigation(self):
        template = self.make_template(chain("Department Focal", "HOD"))

        assert template.first_step.role_name == "Department Focal"
        assert template.next_step(template.first_step).role_name == "HOD"
        assert template.next_step(template.step_at(2)) is None

    def test_step_at_requires_exactly_one_match(self):
        """Test missing and duplicated sequence numbers are integrity errors"""
        steps = chain("A", "B")
        steps.append(StepDefinition(2, "C", is_terminal=True))
        template = self.make_template(steps)

        with pytest.raises(TemplateIntegrityError):
            template.step_at(2)
        with pytest.raises(TemplateIntegrityError):
            template.step_at(9)

    def test_label(self):
        step = StepDefinition(1, "departmental-line-manager", is_terminal=True,
                              resolution=RoleResolution.DYNAMIC_LOOKUP, display_name="Line Manager")
        assert step.label == "Line Manager"
        assert StepDefinition(1, "HOD", is_terminal=True).label == "HOD"

    def test_serialization(self):
        template = self.make_template(chain("Department Focal", "HOD"))
        template.steps[1].skip_when = {"estimated_cost__lte": 1000}

        restored = WorkflowTemplate.from_dict(template.to_dict())
        assert restored.entity_type == EntityType.TRF
        assert restored.steps == template.steps


class TestTemplateStore:
    """Test template storage"""

    def test_create_and_get(self, template_store):
        template = template_store.create_template("TRF approval", "trf", chain("Department Focal", "HOD"))

        loaded = template_store.get_template(template.id)
        assert loaded.name == "TRF approval"
        assert loaded.entity_type == EntityType.TRF
        assert len(loaded.steps) == 2
        assert template_store.get_active_template(EntityType.TRF).id == template.id

    def test_invalid_steps_rejected(self, template_store):
        with pytest.raises(ValidationError):
            template_store.create_template("Broken", "TRF", [])

    def test_new_active_template_replaces_old(self, template_store):
        """Test one active template per entity type"""
        old = template_store.create_template("v1", "TRF", chain("HOD"))
        new = template_store.create_template("v2", "TRF", chain("Department Focal", "HOD"))
        claim = template_store.create_template("claims", "Claim", chain("HOD"))

        assert not template_store.get_template(old.id).is_active
        assert template_store.get_active_template("TRF").id == new.id
        assert template_store.get_active_template("Claim").id == claim.id
        assert [t.id for t in template_store.list_templates("TRF", active_only=True)] == [new.id]

    def test_inactive_template_does_not_replace(self, template_store):
        active = template_store.create_template("v1", "TRF", chain("HOD"))
        template_store.create_template("draft", "TRF", chain("HOD"), is_active=False)

        assert template_store.get_active_template("TRF").id == active.id

    def test_replace_steps(self, template_store):
        template = template_store.create_template("v1", "TRF", chain("HOD"))
        updated = template_store.replace_steps(template.id, chain("Department Focal", "HOD"), "admin-1")

        assert len(updated.steps) == 2
        assert len(template_store.get_template(template.id).steps) == 2

    def test_referenced_template_is_immutable(self, template_store, storage):
        """Test steps cannot change once an instance uses the template"""
        template = template_store.create_template("v1", "TRF", chain("HOD"))
        storage.save(InstanceRepository.INSTANCES_TABLE, "wf-1", {"id": "wf-1", "template_id": template.id})

        with pytest.raises(TemplateIntegrityError):
            template_store.replace_steps(template.id, chain("Department Focal", "HOD"))

    def test_replace_steps_unknown_template(self, template_store):
        with pytest.raises(ValidationError):
            template_store.replace_steps("missing", chain("HOD"))

    def test_replace_waits_for_binding_instance(self, template_store, storage):
        """Test an instance binding the template while a replacement waits blocks the replacement"""
        template = template_store.create_template("v1", "TRF", chain("HOD"))
        held = threading.Event()
        release = threading.Event()
        errors = []

        def bind():
            with storage.atomic(lock_key=template_lock_key(template.id)):
                held.set()
                release.wait(5)
                storage.save(InstanceRepository.INSTANCES_TABLE, "wf-1",
                             {"id": "wf-1", "template_id": template.id})

        def replace():
            try:
                template_store.replace_steps(template.id, chain("Department Focal", "HOD"))
            except TemplateIntegrityError as e:
                errors.append(e)

        binder = threading.Thread(target=bind)
        binder.start()
        held.wait(5)
        replacer = threading.Thread(target=replace)
        replacer.start()
        time.sleep(0.1)
        release.set()
        binder.join(5)
        replacer.join(5)

        assert len(errors) == 1
        assert len(template_store.get_template(template.id).steps) == 1

    def test_existing_template_id_is_not_overwritten(self, template_store, storage):
        template = template_store.create_template("v1", "TRF", chain("HOD"), template_id="fixed")
        storage.save(InstanceRepository.INSTANCES_TABLE, "wf-1", {"id": "wf-1", "template_id": "fixed"})

        with pytest.raises(ValidationError):
            template_store.create_template("v2", "TRF", chain("Department Focal", "HOD"), template_id="fixed")

        stored = template_store.get_template("fixed")
        assert stored.name == "v1"
        assert [s.role_name for s in stored.steps] == ["HOD"]
        assert template_store.get_active_template("TRF").id == template.id

    def test_deactivate(self, template_store):
        template = template_store.create_template("v1", "TRF", chain("HOD"))

        assert template_store.deactivate_template(template.id)
        assert template_store.get_active_template("TRF") is None
        assert not template_store.deactivate_template("missing")

    def test_template_events_audited(self, template_store, audit_trail):
        template = template_store.create_template("v1", "TRF", chain("HOD"), created_by="admin-1")

        events = audit_trail.get_events_for_entity("workflow_template", template.id)
        assert events[0].event_type.value == "template_created"
        assert events[0].user_id == "admin-1"
        assert [s["role_name"] for s in events[0].metadata["steps"]] == ["HOD"]
