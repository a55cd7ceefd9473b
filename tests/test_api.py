"""
Integration tests for the approval portal API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from approval_portal.api import app
from approval_portal.api.auth import PortalSystem, get_portal_system
from approval_portal.config import PortalConfig
from approval_portal.storage import InMemoryStorage


@pytest.fixture
def system():
    """Portal system over in-memory storage with the default templates seeded"""
    config = PortalConfig(database_url="memory://", seed_default_templates=True,
                          notification_webhook_url="")
    system = PortalSystem(config=config, storage=InMemoryStorage())
    directory = system.directory
    directory.create_user("Alice Requestor", "alice@example.com", ["Staff"], "Finance", user_id="req-1")
    directory.create_user("Fiona Focal", "fiona@example.com", ["Department Focal"], "Finance", user_id="focal-1")
    directory.create_user("Liam Manager", "liam@example.com", ["Staff"], "Finance", user_id="lm-1")
    directory.create_user("Hannah Head", "hannah@example.com", ["HOD"], "Finance", user_id="hod-1")
    directory.create_user("Adam Admin", "adam@example.com", ["Admin"], "IT", user_id="admin-1")
    directory.create_user("Oscar Outsider", "oscar@example.com", ["Staff"], "IT", user_id="outsider")
    directory.create_department("Finance", line_manager_id="lm-1", head_id="hod-1")
    system.adapters.get("TRF").create_entity(
        "trf-1", "req-1", "Alice Requestor", department="Finance",
        travel_type="Overseas", estimated_cost=3000
    )
    return system


@pytest.fixture
def client(system):
    """Create a test client bound to the test portal system"""
    app.dependency_overrides[get_portal_system] = lambda: system
    yield TestClient(app)
    app.dependency_overrides.clear()


def start(client, entity_id="trf-1", initiated_by="req-1"):
    return client.post("/workflows/instances", json={
        "entityId": entity_id, "entityType": "TRF", "initiatedBy": initiated_by
    })


def current_sequence(client, instance_id):
    """Sequence number a portal page would show for the instance"""
    return client.get(f"/workflows/instances/{instance_id}").json().get("currentSequenceNumber", 1)


def process(client, instance_id, action, actor, comments=None, **extra):
    body = {"executionId": instance_id, "action": action, "actorTakenBy": actor}
    if comments is not None:
        body["comments"] = comments
    if action in ("approve", "reject"):
        body["expectedSequenceNumber"] = current_sequence(client, instance_id)
    body.update(extra)
    return client.post("/workflows/instances/process", json=body)


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "endpoints" in r.json()


class TestWorkflowInstances:
    """End-to-end workflow instance tests"""

    def test_start(self, client):
        r = start(client)
        assert r.status_code == 201
        data = r.json()
        assert data["projectedStatus"] == "Pending Department Focal"
        assert data["instance"]["status"] == "InProgress"
        assert data["instance"]["currentSequenceNumber"] == 1
        assert [t["intent"] for t in data["triggers"]] == ["request_submitted", "approval_required"]

    def test_start_errors(self, client):
        """Test duplicate, unknown entity and unknown initiator"""
        start(client)

        r = start(client)
        assert r.status_code == 409
        assert r.json()["error"] == "DuplicateInstanceError"

        r = start(client, entity_id="missing")
        assert r.status_code == 404
        assert r.json()["error"] == "EntityNotFoundError"

        r = start(client, initiated_by="nobody")
        assert r.status_code == 404

    def test_start_with_unknown_entity_type(self, client):
        r = client.post("/workflows/instances", json={
            "entityId": "trf-1", "entityType": "Invoice", "initiatedBy": "req-1"
        })
        assert r.status_code == 400
        assert r.json()["error"] == "ValidationError"

    def test_full_approval(self, client, system):
        """Test approving every step through the API"""
        instance_id = start(client).json()["instance"]["id"]

        statuses = [process(client, instance_id, "approve", user).json()["projectedStatus"]
                    for user in ("focal-1", "lm-1", "hod-1")]

        assert statuses == ["Pending Line Manager", "Pending HOD", "Approved"]
        assert system.adapters.get("TRF").read_status("trf-1") == "Approved"

        r = process(client, instance_id, "approve", "hod-1")
        assert r.status_code == 409
        assert r.json()["error"] == "TerminalStateError"

    def test_process_errors(self, client):
        instance_id = start(client).json()["instance"]["id"]

        r = process(client, instance_id, "reject", "focal-1")
        assert r.status_code == 400
        assert r.json() == {"detail": "Rejection comments are required.", "error": "MissingReasonError"}

        r = process(client, instance_id, "approve", "outsider")
        assert r.status_code == 403
        assert r.json()["error"] == "UnauthorizedActorError"

        r = process(client, "no-such-instance", "approve", "focal-1")
        assert r.status_code == 404
        assert r.json()["error"] == "InstanceNotFoundError"

        r = process(client, instance_id, "approve", "focal-1", expectedSequenceNumber=7)
        assert r.status_code == 409
        assert r.json()["error"] == "StaleSequenceError"

    def test_decision_requires_expected_sequence(self, client, system):
        instance_id = start(client).json()["instance"]["id"]

        r = client.post("/workflows/instances/process", json={
            "executionId": instance_id, "action": "approve", "actorTakenBy": "focal-1"
        })
        assert r.status_code == 400
        assert r.json()["error"] == "ValidationError"
        assert "expectedSequenceNumber" in r.json()["detail"]
        assert system.adapters.get("TRF").read_status("trf-1") == "Pending Department Focal"

    def test_malformed_body_is_bad_request(self, client):
        instance_id = start(client).json()["instance"]["id"]

        r = client.post("/workflows/instances/process", json={"executionId": instance_id, "action": "cancel"})
        assert r.status_code == 400
        data = r.json()
        assert data["error"] == "ValidationError"
        assert "actorTakenBy" in data["detail"]
        assert data["details"]["errors"][0]["loc"] == ["body", "actorTakenBy"]

        r = process(client, instance_id, "approve", "focal-1", expectedSequenceNumber="first")
        assert r.status_code == 400

    def test_reject(self, client, system):
        instance_id = start(client).json()["instance"]["id"]
        r = process(client, instance_id, "reject", "focal-1", "Missing itinerary")

        assert r.status_code == 200
        assert r.json()["projectedStatus"] == "Rejected"
        assert system.adapters.get("TRF").read_status("trf-1") == "Rejected"

    def test_no_eligible_approver(self, client, system):
        system.directory.deactivate_user("lm-1")
        instance_id = start(client).json()["instance"]["id"]

        r = process(client, instance_id, "approve", "focal-1")
        assert r.status_code == 422
        assert r.json()["error"] == "NoEligibleApproverError"

    def test_get_instance(self, client):
        instance_id = start(client).json()["instance"]["id"]
        process(client, instance_id, "approve", "focal-1")

        r = client.get(f"/workflows/instances/{instance_id}")
        assert r.status_code == 200
        data = r.json()
        assert data["projectedStatus"] == "Pending Line Manager"
        assert data["pendingStep"]["label"] == "Line Manager"
        assert [h["decision"] for h in data["history"]] == ["Processed", "Approved"]

        assert client.get("/workflows/instances/missing").status_code == 404

    def test_list_visibility(self, client):
        """Test each caller sees only instances they originated or may act on"""
        start(client)

        def listed(user_id, **params):
            r = client.get("/workflows/instances", params=params, headers={"X-Actor-Id": user_id})
            assert r.status_code == 200
            return [row["entityId"] for row in r.json()["instances"]]

        assert listed("focal-1") == ["trf-1"]
        assert listed("req-1") == ["trf-1"]
        assert listed("admin-1") == ["trf-1"]
        assert listed("lm-1") == []
        assert listed("outsider") == []
        assert listed("admin-1", role="HOD") == []
        assert listed("admin-1", status="Approved") == []

        rows = client.get("/workflows/instances", headers={"X-Actor-Id": "focal-1"}).json()["instances"]
        assert rows[0]["projectedStatus"] == "Pending Department Focal"

    def test_list_requires_actor(self, client):
        assert client.get("/workflows/instances").status_code == 401
        assert client.get("/workflows/instances", headers={"X-Actor-Id": "nobody"}).status_code == 404

    def test_list_unknown_status(self, client):
        r = client.get("/workflows/instances", params={"status": "Lost"}, headers={"X-Actor-Id": "admin-1"})
        assert r.status_code == 400


class TestTemplates:
    """Template endpoint tests"""

    def test_list_seeded_templates(self, client):
        r = client.get("/workflows/templates")
        assert r.status_code == 200
        assert r.json()["count"] == 5

        r = client.get("/workflows/templates", params={"entity_type": "Claim"})
        labels = [s["label"] for s in r.json()["templates"][0]["steps"]]
        assert labels == ["Verification", "HOD Approval", "Finance Approval"]

    def test_create_template(self, client):
        r = client.post("/workflows/templates", json={
            "name": "Short TRF",
            "entityType": "TRF",
            "createdBy": "admin-1",
            "steps": [
                {"sequenceNumber": 1, "roleName": "requestor", "resolution": "dynamic_lookup",
                 "onApproveNextSequence": 2},
                {"sequenceNumber": 2, "roleName": "HOD", "isTerminal": True,
                 "onRejectStatus": "Returned"},
            ]
        })
        assert r.status_code == 201
        template = r.json()
        assert template["isActive"]

        r = client.get(f"/workflows/templates/{template['id']}")
        assert r.status_code == 200
        assert r.json()["steps"][1]["onRejectStatus"] == "Returned"

        # New TRF submissions use the new active template
        data = start(client).json()
        assert data["instance"]["templateId"] == template["id"]
        assert data["projectedStatus"] == "Pending HOD"

    def test_create_invalid_template(self, client):
        r = client.post("/workflows/templates", json={
            "name": "Broken", "entityType": "TRF",
            "steps": [{"sequenceNumber": 1, "roleName": "HOD"}]
        })
        assert r.status_code == 400
        assert r.json()["error"] == "ValidationError"

    def test_get_missing_template(self, client):
        assert client.get("/workflows/templates/missing").status_code == 404


class TestLegacyEndpoints:
    """Legacy action route tests"""

    def test_legacy_action_adopts_and_approves(self, client, system):
        system.adapters.get("TRF").create_entity(
            "trf-old", "req-1", "Alice Requestor", department="Finance",
            status="Pending Department Focal", travel_type="Local", estimated_cost=200
        )

        r = client.post("/legacy/TRF/trf-old/action", json={
            "action": "verify", "approverId": "focal-1", "expectedStatus": "Pending Department Focal"
        })
        assert r.status_code == 200
        assert r.json()["projectedStatus"] == "Pending Line Manager"

        r = client.post("/legacy/trf/trf-old/action", json={
            "action": "approve", "approverId": "lm-1", "expectedStatus": "Pending Line Manager"
        })
        assert r.json()["projectedStatus"] == "Approved"
        assert [s["roleName"] for s in r.json()["skipped"]] == ["HOD"]

    def test_adopt(self, client, system):
        system.adapters.get("TRF").create_entity(
            "trf-old", "req-1", "Alice Requestor", department="Finance", status="Pending HOD"
        )
        r = client.post("/legacy/TRF/trf-old/adopt", json={"adoptedBy": "admin-1"})

        assert r.status_code == 200
        assert r.json()["currentSequenceNumber"] == 3
        assert r.json()["projectedStatus"] == "Pending HOD"

        r = client.post("/legacy/TRF/trf-old/adopt", json={"adoptedBy": "admin-1"})
        assert r.status_code == 409

    def test_legacy_decision_requires_binding(self, client, system):
        system.adapters.get("TRF").create_entity(
            "trf-old", "req-1", "Alice Requestor", department="Finance", status="Pending Line Manager",
            travel_type="Overseas", estimated_cost=3000
        )

        r = client.post("/legacy/TRF/trf-old/action", json={"action": "approve", "approverId": "lm-1"})
        assert r.status_code == 400
        assert r.json()["error"] == "ValidationError"

        body = {"action": "approve", "approverId": "lm-1", "expectedStatus": "Pending Line Manager"}
        assert client.post("/legacy/TRF/trf-old/action", json=body).status_code == 200
        r = client.post("/legacy/TRF/trf-old/action", json=body)
        assert r.status_code == 409
        assert r.json()["error"] == "StaleSequenceError"
        assert system.adapters.get("TRF").read_status("trf-old") == "Pending HOD"
