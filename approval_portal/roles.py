"""
Role Resolver Module

Turns a step definition plus the entity's approval context into the set of
people allowed to act on that step. Resolution is driven by the step's
RoleResolution variant; dynamic keys go through a registry of lookup
functions.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from .adapters import SYSTEM_ACTOR_ID, EntityContext
from .directory import UserDirectory
from .exceptions import TemplateIntegrityError
from .logging_config import get_logger
from .templates import REQUESTOR_KEY, RoleResolution, StepDefinition


logger = get_logger("portal.roles")


@dataclass(frozen=True)
class ActorIdentity:
    """A person who may act on a step; equality is by id"""
    id: str
    name: str = field(default="", compare=False)


@dataclass
class Actor:
    """The verified caller performing an action"""
    id: str
    name: str = ""
    roles: List[str] = field(default_factory=list)

    @property
    def identity(self) -> ActorIdentity:
        return ActorIdentity(self.id, self.name)

    def has_any_role(self, roles: List[str]) -> bool:
        return any(role in self.roles for role in roles)


SYSTEM_ACTOR = Actor(id=SYSTEM_ACTOR_ID, name="System")


LookupFunction = Callable[[EntityContext, UserDirectory], Set[ActorIdentity]]


def _active_identity(directory: UserDirectory, user_id: Optional[str]) -> Set[ActorIdentity]:
    if not user_id:
        return set()
    user = directory.get_user(user_id)
    if user is None or not user.is_active:
        return set()
    return {ActorIdentity(user.id, user.name)}


def lookup_requestor(context: EntityContext, directory: UserDirectory) -> Set[ActorIdentity]:
    return _active_identity(directory, context.requestor_id)


def lookup_line_manager(context: EntityContext, directory: UserDirectory) -> Set[ActorIdentity]:
    department = directory.get_department(context.department) if context.department else None
    return _active_identity(directory, department.line_manager_id if department else None)


def lookup_department_head(context: EntityContext, directory: UserDirectory) -> Set[ActorIdentity]:
    department = directory.get_department(context.department) if context.department else None
    return _active_identity(directory, department.head_id if department else None)


BUILTIN_LOOKUPS: Dict[str, LookupFunction] = {
    REQUESTOR_KEY: lookup_requestor,
    "departmental-line-manager": lookup_line_manager,
    "department-head": lookup_department_head,
}


class RoleResolver:
    """Resolves step roles to concrete actors"""

    def __init__(self, directory: UserDirectory):
        self.directory = directory
        self._lookups: Dict[str, LookupFunction] = dict(BUILTIN_LOOKUPS)

    def register_lookup(self, key: str, lookup: LookupFunction) -> None:
        """Add or replace a dynamic lookup key"""
        self._lookups[key] = lookup

    def has_lookup(self, key: str) -> bool:
        return key in self._lookups

    def resolve(self, step: StepDefinition, context: EntityContext) -> Set[ActorIdentity]:
        """
        People allowed to act on a step for the given entity.

        An empty set means nobody may act; callers never treat it as "anyone".

        Raises:
            TemplateIntegrityError: the step names an unknown dynamic lookup key
        """
        if step.resolution == RoleResolution.LITERAL:
            users = self.directory.list_users(role=step.role_name, is_active=True)
        elif step.resolution == RoleResolution.DEPARTMENT_SCOPED:
            if not context.department:
                return set()
            users = self.directory.list_users(
                role=step.role_name, department=context.department, is_active=True
            )
        else:
            lookup = self._lookups.get(step.role_name)
            if lookup is None:
                logger.error(f"Unknown role lookup key '{step.role_name}' on step {step.sequence_number}")
                raise TemplateIntegrityError(
                    f"Unknown role lookup key: {step.role_name}",
                    {"sequence_number": step.sequence_number}
                )
            return lookup(context, self.directory)

        return {ActorIdentity(user.id, user.name) for user in users}

    def is_authorized(self, actor: Actor, step: StepDefinition, context: EntityContext) -> bool:
        return actor.identity in self.resolve(step, context)
