"""
Portal system container and caller identity dependencies
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException

from ..adapters import AdapterRegistry
from ..audit import AuditTrail
from ..config import PortalConfig, get_config
from ..directory import UserDirectory
from ..exceptions import EntityNotFoundError, UnauthorizedActorError
from ..legacy import LegacyBridge, seed_default_templates
from ..logging_config import get_logger
from ..notifications import InAppSink, LogSink, NotificationDispatcher, WebhookSink
from ..roles import Actor, RoleResolver
from ..storage import StorageInterface, create_storage
from ..templates import TemplateStore
from ..workflows import WorkflowEngine


logger = get_logger("portal.api")


class PortalSystem:
    """Approval portal with all components initialized"""

    def __init__(self, config: Optional[PortalConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()

        # Initialize storage
        if storage is None:
            storage = create_storage(self.config.database_url,
                                     busy_timeout=self.config.lock_timeout_seconds)
        self.storage = storage

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.directory = UserDirectory(self.storage, self.audit_trail)
        self.template_store = TemplateStore(self.storage, self.audit_trail)
        self.resolver = RoleResolver(self.directory)
        self.adapters = AdapterRegistry(self.storage)
        self.dispatcher = NotificationDispatcher(self.storage, self._create_sinks())

        self.workflow_engine = WorkflowEngine(
            self.storage, self.template_store, self.resolver, self.adapters,
            audit_trail=self.audit_trail,
            dispatcher=self.dispatcher,
            admin_roles=self.config.admin_roles,
            lock_timeout=self.config.lock_timeout_seconds,
            transaction_retries=self.config.transaction_retries
        )
        self.legacy_bridge = LegacyBridge(self.workflow_engine)

        if self.config.seed_default_templates:
            seed_default_templates(self.template_store)

    def _create_sinks(self):
        """Create notification sinks based on configuration"""
        sinks = [LogSink(), InAppSink(self.storage)]

        # Only deliver to the webhook if a URL is configured
        if self.config.notification_webhook_url:
            sinks.append(WebhookSink(
                self.config.notification_webhook_url,
                timeout=self.config.notification_webhook_timeout
            ))
        return sinks

    def actor_for(self, user_id: Optional[str]) -> Actor:
        """
        Build the acting identity for a directory user.

        Raises:
            EntityNotFoundError: unknown user
            UnauthorizedActorError: the user is deactivated
        """
        user = self.directory.get_user(user_id) if user_id else None
        if user is None:
            raise EntityNotFoundError(f"User {user_id} not found", {"user_id": user_id})
        if not user.is_active:
            logger.warning(f"Deactivated user {user_id} attempted an action")
            raise UnauthorizedActorError(f"User {user_id} is deactivated", {"user_id": user_id})
        return Actor(id=user.id, name=user.name, roles=list(user.roles))


# Global portal system instance, created on first use
portal_system: Optional[PortalSystem] = None


def get_portal_system() -> PortalSystem:
    global portal_system
    if portal_system is None:
        portal_system = PortalSystem()
    return portal_system


def get_current_actor(
    x_actor_id: Optional[str] = Header(default=None),
    system: PortalSystem = Depends(get_portal_system)
) -> Actor:
    """Resolve the caller from the X-Actor-Id header set by the authenticating proxy"""
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")
    return system.actor_for(x_actor_id)
