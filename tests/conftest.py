"""
Shared fixtures: an in-memory portal with a small directory of users
"""

import pytest

from approval_portal.adapters import AdapterRegistry
from approval_portal.audit import AuditTrail
from approval_portal.directory import UserDirectory
from approval_portal.notifications import LogSink, NotificationDispatcher
from approval_portal.roles import Actor, RoleResolver
from approval_portal.storage import InMemoryStorage
from approval_portal.templates import RoleResolution, StepDefinition, TemplateStore
from approval_portal.workflows import WorkflowEngine


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    """Create audit trail for testing"""
    return AuditTrail(storage)


@pytest.fixture
def directory(storage, audit_trail):
    """Directory with requestors, approvers for each legacy role and an admin"""
    directory = UserDirectory(storage, audit_trail)
    directory.create_user("Alice Requestor", "alice@example.com", ["Staff"], "Finance", user_id="req-1")
    directory.create_user("Fiona Focal", "fiona@example.com", ["Department Focal"], "Finance", user_id="focal-1")
    directory.create_user("Ivan Focal", "ivan@example.com", ["Department Focal"], "IT", user_id="focal-2")
    directory.create_user("Liam Manager", "liam@example.com", ["Staff"], "Finance", user_id="lm-1")
    directory.create_user("Hannah Head", "hannah@example.com", ["HOD"], "Finance", user_id="hod-1")
    directory.create_user("Frank Clerk", "frank@example.com", ["Finance Clerk"], "Finance", user_id="fin-1")
    directory.create_user("Vera Clerk", "vera@example.com", ["Visa Clerk"], "HR", user_id="visa-1")
    directory.create_user("Adam Admin", "adam@example.com", ["Admin"], "IT", user_id="admin-1")
    directory.create_user("Oscar Outsider", "oscar@example.com", ["Staff"], "IT", user_id="outsider")
    directory.create_department("Finance", line_manager_id="lm-1", head_id="hod-1")
    directory.create_department("IT", line_manager_id="admin-1", head_id="admin-1")
    return directory


@pytest.fixture
def actor(directory):
    """Factory turning a directory user id into an Actor"""
    def make(user_id):
        user = directory.get_user(user_id)
        return Actor(id=user.id, name=user.name, roles=list(user.roles))
    return make


@pytest.fixture
def template_store(storage, audit_trail):
    return TemplateStore(storage, audit_trail)


@pytest.fixture
def adapters(storage):
    return AdapterRegistry(storage)


@pytest.fixture
def resolver(directory):
    return RoleResolver(directory)


@pytest.fixture
def dispatcher(storage):
    return NotificationDispatcher(storage, [LogSink()])


@pytest.fixture
def engine(storage, template_store, resolver, adapters, audit_trail, dispatcher):
    """Create workflow engine for testing"""
    return WorkflowEngine(
        storage, template_store, resolver, adapters,
        audit_trail=audit_trail, dispatcher=dispatcher, lock_timeout=2.0
    )


@pytest.fixture
def focal_template(template_store):
    """Requestor -> Department Focal chain for travel requests"""
    return template_store.create_template(
        name="TRF focal review",
        entity_type="TRF",
        steps=[
            StepDefinition(1, "requestor", on_approve_next_sequence=2,
                           resolution=RoleResolution.DYNAMIC_LOOKUP, display_name="Requestor"),
            StepDefinition(2, "Department Focal", is_terminal=True,
                           resolution=RoleResolution.DEPARTMENT_SCOPED),
        ],
        created_by="admin-1"
    )


@pytest.fixture
def make_trf(adapters):
    """Factory creating travel requests owned by Alice in Finance"""
    def make(entity_id, requestor_id="req-1", department="Finance", **fields):
        fields.setdefault("travel_type", "Overseas")
        fields.setdefault("estimated_cost", 2500)
        return adapters.get("TRF").create_entity(
            entity_id, requestor_id, "Alice Requestor", department=department, **fields
        )
    return make
