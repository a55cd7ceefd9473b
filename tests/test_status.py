"""
Test suite for status projection and replay
"""

from datetime import datetime, timezone

import pytest

from approval_portal.adapters import EntityType
from approval_portal.instances import Decision, InstanceRepository, StepExecution, WorkflowStatus
from approval_portal.legacy import seed_default_templates
from approval_portal.status import StatusSynchronizer, pending_step, rebuild_state
from approval_portal.templates import RoleResolution, StepDefinition, WorkflowTemplate


NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def template():
    """Requestor -> Department Focal -> HOD, where HOD rejection returns the request"""
    return WorkflowTemplate(
        id="tpl-1", created_at=NOW, updated_at=NOW, name="TRF", entity_type=EntityType.TRF,
        steps=[
            StepDefinition(1, "requestor", on_approve_next_sequence=2,
                           resolution=RoleResolution.DYNAMIC_LOOKUP),
            StepDefinition(2, "Department Focal", on_approve_next_sequence=3,
                           resolution=RoleResolution.DEPARTMENT_SCOPED),
            StepDefinition(3, "HOD", is_terminal=True, on_reject_status="Returned to Requestor"),
        ]
    )


@pytest.fixture
def synchronizer(template_store, adapters, storage):
    return StatusSynchronizer(template_store, adapters, InstanceRepository(storage))


def log(*entries):
    """Executions from (sequence_number, decision) pairs"""
    return [
        StepExecution(id=f"e{i}", created_at=NOW, updated_at=NOW, instance_id="wf-1", position=i,
                      sequence_number=seq, role_name="r", actor_id="a", actor_name="A",
                      decision=decision, timestamp=NOW)
        for i, (seq, decision) in enumerate(entries)
    ]


class TestPendingStep:
    def test_requestor_step_points_to_next(self, template):
        assert pending_step(template, 1).role_name == "Department Focal"
        assert pending_step(template, 3).role_name == "HOD"


class TestProjection:
    """Test the status string written to entity rows"""

    @pytest.mark.parametrize("status,current,latest,expected", [
        (WorkflowStatus.IN_PROGRESS, 1, None, "Pending Department Focal"),
        (WorkflowStatus.IN_PROGRESS, 3, (2, Decision.APPROVED), "Pending HOD"),
        (WorkflowStatus.APPROVED, 3, (3, Decision.APPROVED), "Approved"),
        (WorkflowStatus.CANCELLED, 2, (2, Decision.CANCELLED), "Cancelled"),
        (WorkflowStatus.REJECTED, 2, (2, Decision.REJECTED), "Rejected"),
        (WorkflowStatus.REJECTED, 3, (3, Decision.REJECTED), "Returned to Requestor"),
        # A final decision in the log wins over an instance row that disagrees
        (WorkflowStatus.IN_PROGRESS, 3, (3, Decision.REJECTED), "Returned to Requestor"),
        (WorkflowStatus.IN_PROGRESS, 2, (2, Decision.CANCELLED), "Cancelled"),
    ])
    def test_project_with(self, synchronizer, template, status, current, latest, expected):
        latest_execution = log(latest)[0] if latest else None
        assert synchronizer.project_with(template, status, current, latest_execution) == expected


class TestReplay:
    """Test rebuilding state from the execution log"""

    @pytest.mark.parametrize("entries,status,current,projected", [
        ([(1, Decision.PROCESSED)], WorkflowStatus.IN_PROGRESS, 1, "Pending Department Focal"),
        ([(1, Decision.PROCESSED), (2, Decision.APPROVED)], WorkflowStatus.IN_PROGRESS, 3, "Pending HOD"),
        ([(1, Decision.PROCESSED), (2, Decision.APPROVED), (3, Decision.APPROVED)],
         WorkflowStatus.APPROVED, 3, "Approved"),
        ([(1, Decision.PROCESSED), (2, Decision.APPROVED), (3, Decision.PROCESSED)],
         WorkflowStatus.APPROVED, 3, "Approved"),
        ([(1, Decision.PROCESSED), (2, Decision.REJECTED)], WorkflowStatus.REJECTED, 1, "Rejected"),
        ([(1, Decision.PROCESSED), (2, Decision.APPROVED), (3, Decision.REJECTED)],
         WorkflowStatus.REJECTED, 3, "Returned to Requestor"),
        ([(1, Decision.PROCESSED), (2, Decision.CANCELLED)], WorkflowStatus.CANCELLED, 1, "Cancelled"),
    ])
    def test_replay(self, synchronizer, template, entries, status, current, projected):
        state = rebuild_state(template, log(*entries))

        assert state.status == status
        assert state.current_sequence_number == current
        assert synchronizer.replay(template, log(*entries)) == projected

    def test_rows_after_terminal_decision_are_ignored(self, template):
        state = rebuild_state(template, log(
            (1, Decision.PROCESSED), (2, Decision.REJECTED), (3, Decision.APPROVED)
        ))
        assert state.status == WorkflowStatus.REJECTED


class TestSynchronize:
    """Test writing projections into entity rows"""

    def test_synchronize_and_resync(self, engine, focal_template, make_trf, actor, adapters):
        """Test a hand-edited status column is repaired from the workflow"""
        make_trf("trf-1")
        engine.start_instance("trf-1", "TRF", focal_template.id, actor("req-1"))
        adapters.get("TRF").write_status("trf-1", "Pending Something Else")

        assert engine.resync_status("trf-1", "TRF") == "Pending Department Focal"
        assert adapters.get("TRF").read_status("trf-1") == "Pending Department Focal"

        instance = engine.get_instance_for_entity("trf-1", "TRF")
        assert engine.synchronizer.synchronize(instance) == ("Pending Department Focal", False)

    def test_sync_failure_does_not_undo_transition(self, engine, focal_template, make_trf, actor,
                                                   adapters, monkeypatch, caplog):
        """Test a failing status write after commit is logged and the transition stands"""
        make_trf("trf-1")
        engine.start_instance("trf-1", "TRF", focal_template.id, actor("req-1"))

        def broken(entity_id, projected_status):
            raise RuntimeError("status column locked")

        monkeypatch.setattr(adapters.get("TRF"), "write_status", broken)
        with caplog.at_level("ERROR", logger="portal.workflows"):
            result = engine.process_step("trf-1", "TRF", "approve", actor("focal-1"))

        assert result.instance.status == WorkflowStatus.APPROVED
        assert engine.get_instance(result.instance.id).status == WorkflowStatus.APPROVED
        assert adapters.get("TRF").read_status("trf-1") == "Pending Department Focal"
        assert any("Status synchronization failed" in r.getMessage() for r in caplog.records)

    def test_late_synchronize_keeps_newer_status(self, engine, template_store, make_trf, actor, adapters):
        """Test synchronizing an older copy of the instance writes the committed state"""
        seed_default_templates(template_store)
        make_trf("trf-1")
        engine.start_instance("trf-1", "TRF", None, actor("req-1"))
        first = engine.process_step("trf-1", "TRF", "approve", actor("focal-1"), expected_sequence_number=1)
        engine.process_step("trf-1", "TRF", "approve", actor("lm-1"), expected_sequence_number=2)
        assert first.instance.current_sequence_number == 2

        assert engine.synchronizer.synchronize(first.instance) == ("Pending HOD", False)
        assert adapters.get("TRF").read_status("trf-1") == "Pending HOD"
