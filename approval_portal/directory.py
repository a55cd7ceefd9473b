"""
User & Department Directory Module

Portal users with their roles and department, and the departments with their
line manager and head. The Role Resolver reads from here to decide who may act
on a workflow step.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from .audit import AuditEventType, AuditTrail
from .exceptions import ValidationError
from .storage import StorageInterface, StorageRecord


@dataclass
class User(StorageRecord):
    """Portal user"""
    name: str
    email: str
    roles: List[str] = field(default_factory=list)  # role names, e.g. "Department Focal"
    department: Optional[str] = None
    is_active: bool = True

    def has_role(self, role_name: str) -> bool:
        return role_name in self.roles


@dataclass
class Department(StorageRecord):
    """Department; the id is the department name"""
    name: str
    line_manager_id: Optional[str] = None
    head_id: Optional[str] = None


class UserDirectory:
    """Users and departments backed by storage"""

    USERS_TABLE = "users"
    DEPARTMENTS_TABLE = "departments"

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit = audit_trail

    # User Management

    def create_user(self, name: str, email: str, roles: List[str],
                    department: Optional[str] = None, user_id: Optional[str] = None,
                    created_by: str = "system") -> User:
        """Create a new user; user_id defaults to a generated UUID"""
        user_id = user_id or str(uuid.uuid4())
        if self.storage.exists(self.USERS_TABLE, user_id):
            raise ValidationError(f"User {user_id} already exists")

        now = datetime.now(timezone.utc)
        user = User(
            id=user_id,
            created_at=now,
            updated_at=now,
            name=name,
            email=email,
            roles=list(roles),
            department=department
        )
        self.storage.save(self.USERS_TABLE, user.id, user.to_dict())

        if self.audit:
            self.audit.log_event(
                AuditEventType.USER_CREATED,
                'user',
                user.id,
                {'name': name, 'roles': roles, 'department': department},
                created_by
            )

        return user

    def get_user(self, user_id: str) -> Optional[User]:
        """Get user by ID"""
        data = self.storage.load(self.USERS_TABLE, user_id)
        if not data:
            return None
        return User.from_dict(data)

    def list_users(self, role: Optional[str] = None, department: Optional[str] = None,
                   is_active: Optional[bool] = None) -> List[User]:
        """List users with optional filters"""
        users = [User.from_dict(data) for data in self.storage.load_all(self.USERS_TABLE)]

        if role is not None:
            users = [u for u in users if u.has_role(role)]
        if department is not None:
            users = [u for u in users if u.department == department]
        if is_active is not None:
            users = [u for u in users if u.is_active == is_active]

        return sorted(users, key=lambda u: u.id)

    def deactivate_user(self, user_id: str, deactivated_by: str = "system") -> bool:
        """Deactivate a user; inactive users are never resolved as approvers"""
        user = self.get_user(user_id)
        if not user:
            return False

        user.is_active = False
        user.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.USERS_TABLE, user.id, user.to_dict())

        if self.audit:
            self.audit.log_event(
                AuditEventType.USER_DEACTIVATED,
                'user',
                user.id,
                {},
                deactivated_by
            )
        return True

    # Department Management

    def create_department(self, name: str, line_manager_id: Optional[str] = None,
                          head_id: Optional[str] = None,
                          created_by: str = "system") -> Department:
        """Create or replace a department"""
        if not name:
            raise ValidationError("Department name is required")

        now = datetime.now(timezone.utc)
        department = Department(
            id=name,
            created_at=now,
            updated_at=now,
            name=name,
            line_manager_id=line_manager_id,
            head_id=head_id
        )
        self.storage.save(self.DEPARTMENTS_TABLE, department.id, department.to_dict())

        if self.audit:
            self.audit.log_event(
                AuditEventType.DEPARTMENT_CREATED,
                'department',
                department.id,
                {'line_manager_id': line_manager_id, 'head_id': head_id},
                created_by
            )

        return department

    def get_department(self, name: str) -> Optional[Department]:
        data = self.storage.load(self.DEPARTMENTS_TABLE, name)
        if not data:
            return None
        return Department.from_dict(data)
