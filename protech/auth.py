"""Session state read by the sync components.

Sync code never mutates the session; it only asks who is signed in, for
which shop, and with what role.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from protech.config import Settings
from protech.errors import NotAuthenticatedError, PermissionDeniedError

logger = logging.getLogger(__name__)

PRIVILEGED_ROLES = frozenset({"admin", "manager"})


@dataclass(frozen=True)
class Session:
    shop_id: str
    role: str = "technician"
    user_id: Optional[str] = None
    access_token: Optional[str] = None


class SessionProvider:
    """Holds the active session, if any."""

    def __init__(self, session: Optional[Session] = None):
        self._session = session

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionProvider":
        if not settings.shop_id:
            return cls(None)
        return cls(
            Session(
                shop_id=settings.shop_id,
                role=(settings.role or "technician").lower(),
                user_id=settings.user_id,
                access_token=settings.access_token,
            )
        )

    @property
    def current_session(self) -> Optional[Session]:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    @property
    def current_shop_id(self) -> Optional[str]:
        return self._session.shop_id if self._session else None

    @property
    def current_role(self) -> Optional[str]:
        return self._session.role if self._session else None

    def require_session(self) -> Session:
        if self._session is None:
            raise NotAuthenticatedError("Not authenticated")
        return self._session

    def require_shop(self, shop_id: Optional[str]) -> Session:
        """Check that ``shop_id`` belongs to the active tenant."""
        session = self.require_session()
        if shop_id != session.shop_id:
            logger.warning(f"Rejected cross-tenant access to shop {shop_id}")
            raise PermissionDeniedError(
                f"Record belongs to shop {shop_id}, session is for shop {session.shop_id}"
            )
        return session

    def require_role(self, allowed: frozenset) -> Session:
        session = self.require_session()
        if session.role not in allowed:
            raise PermissionDeniedError(
                f"Role '{session.role}' may not perform this operation "
                f"(requires one of: {', '.join(sorted(allowed))})"
            )
        return session
