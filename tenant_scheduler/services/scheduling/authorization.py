"""
Authorization for control-surface operations.

Every control-surface call asks an authorizer whether ``user`` may perform
``action`` on a tenant's jobs before touching the store. Membership itself is
owned by the host application and reached through ``MembershipLookup``.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from tenant_scheduler.utils.logger import get_logger

from .core.errors import AuthorizationError

logger = get_logger(__name__)


class JobAction(str, Enum):
    """Operations an authorizer decides on"""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    ENABLE = "enable"
    DISABLE = "disable"
    DELETE = "delete"
    EXECUTE = "execute"


class MemberRole(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"


class BaseAuthorizer(ABC):
    """Decides whether a user may act on a tenant's scheduled jobs"""

    @abstractmethod
    def authorize(
        self,
        tenant_id: str,
        user_id: Optional[str],
        action: JobAction,
        job_id: Optional[str] = None,
    ) -> None:
        """
        Return normally if allowed.

        Raises:
            AuthorizationError: If the user may not perform ``action``
        """
        pass


class AllowAllAuthorizer(BaseAuthorizer):
    """Authorizer for embedded and single-tenant hosts"""

    def authorize(self, tenant_id, user_id, action, job_id=None) -> None:
        return None


class MembershipLookup(ABC):
    """Host-provided view of tenant membership"""

    @abstractmethod
    def get_role(self, tenant_id: str, user_id: str) -> Optional[MemberRole]:
        """Active role of ``user_id`` in ``tenant_id``, None if not a member"""
        pass

    @abstractmethod
    def is_system_admin(self, user_id: str) -> bool:
        pass


class StaticMembershipLookup(MembershipLookup):
    """Membership held in memory, for tests and small deployments"""

    def __init__(
        self,
        roles: Optional[Dict[Tuple[str, str], MemberRole]] = None,
        system_admins: Iterable[str] = (),
    ):
        self._roles: Dict[Tuple[str, str], MemberRole] = dict(roles or {})
        self._system_admins = set(system_admins)

    def add_member(
        self, tenant_id: str, user_id: str, role: MemberRole = MemberRole.MEMBER
    ) -> None:
        self._roles[(tenant_id, user_id)] = MemberRole(role)

    def get_role(self, tenant_id: str, user_id: str) -> Optional[MemberRole]:
        return self._roles.get((tenant_id, user_id))

    def is_system_admin(self, user_id: str) -> bool:
        return user_id in self._system_admins


class MembershipAuthorizer(BaseAuthorizer):
    """
    Tenant membership policy.

    Members may read their tenant's jobs and execution history. Tenant admins
    may do everything. System admins may act in any tenant. Anonymous callers
    are always rejected.
    """

    def __init__(self, membership: MembershipLookup):
        self.membership = membership

    def authorize(
        self,
        tenant_id: str,
        user_id: Optional[str],
        action: JobAction,
        job_id: Optional[str] = None,
    ) -> None:
        action = JobAction(action)
        if not user_id:
            raise AuthorizationError("Authentication required", action.value)

        if self.membership.is_system_admin(user_id):
            return

        role = self.membership.get_role(tenant_id, user_id)
        if role is None:
            logger.info(
                "Rejected non-member",
                tenant_id=tenant_id,
                user_id=user_id,
                action=action.value,
            )
            raise AuthorizationError(
                "User is not a member of this organization", action.value
            )

        if role == MemberRole.ADMIN or action == JobAction.READ:
            return

        logger.info(
            "Rejected non-admin",
            tenant_id=tenant_id,
            user_id=user_id,
            action=action.value,
            job_id=job_id,
        )
        raise AuthorizationError(
            "Only organization admins can manage scheduled jobs", action.value
        )
