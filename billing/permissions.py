"""Role checks for billing operations."""

from uuid import UUID

from billing.exceptions import ForbiddenError
from utils.actor_context import Actor, get_current_actor


def require_admin() -> Actor:
    """
    Ensure the current actor is a platform admin.

    Every mutating billing operation calls this first.

    Raises:
        ForbiddenError: If the actor is not an admin
    """
    actor = get_current_actor()
    if not actor.is_admin:
        raise ForbiddenError("Platform admin role required")
    return actor


def require_admin_or_user(user_id: UUID | None) -> Actor:
    """
    Ensure the current actor is an admin or the given user.

    Used for partner-facing reads, where a partner may view its own data.
    """
    actor = get_current_actor()
    if actor.is_admin:
        return actor
    if user_id is not None and actor.id == user_id:
        return actor
    raise ForbiddenError("Not permitted to view this resource")
