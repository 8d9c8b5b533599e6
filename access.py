"""
Access control: who counts as admin, and where a session may go.
"""

from enum import Enum
from typing import Iterable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from session import Session


class RouteDecision(str, Enum):
    ALLOW = "allow"
    LOADING = "loading"
    SIGN_IN = "sign_in"
    RESTRICTED = "restricted"
    HOME = "home"


class AccessPolicy:
    """Admin is granted by the configured email allow-list OR the stored role."""

    def __init__(self, admin_emails: Iterable[str] = ()):
        self.admin_emails = frozenset(e.strip().casefold() for e in admin_emails if e and e.strip())

    def is_admin(self, email: Optional[str], role: Optional[str]) -> bool:
        if email and email.strip().casefold() in self.admin_emails:
            return True
        return role == "admin"


def guard(session: Optional["Session"], required_role: Optional[str] = None,
          loading: bool = False) -> RouteDecision:
    """Decide what a session gets to see for a route.

    A banned identity is sent to the restricted view before any role check, so
    admins are not exempt.
    """
    if loading:
        return RouteDecision.LOADING
    if session is None or not session.signed_in:
        return RouteDecision.SIGN_IN
    if session.is_banned:
        return RouteDecision.RESTRICTED
    if required_role == "admin" and not session.is_admin:
        return RouteDecision.HOME
    return RouteDecision.ALLOW
