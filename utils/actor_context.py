"""Propagate the acting identity through the call stack using contextvars."""

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum
from uuid import UUID


class ActorRole(str, Enum):
    """Platform role of the caller, resolved upstream of this service."""

    ADMIN = "admin"
    ADVERTISER = "advertiser"
    PARTNER = "partner"


@dataclass(frozen=True)
class Actor:
    """Who is performing the current operation."""

    id: UUID
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


_current_actor: ContextVar[Actor | None] = ContextVar("current_actor", default=None)


def get_current_actor() -> Actor:
    """
    Get the current actor from context.

    Raises RuntimeError if no actor is set. Every entry point (API request,
    scheduled job) establishes one, so a missing actor is a bug.
    """
    actor = _current_actor.get()
    if actor is None:
        raise RuntimeError(
            "No actor context set. This usually means billing code is being "
            "called outside of a request or job that established an actor."
        )
    return actor


def get_current_actor_id() -> UUID:
    """Shortcut for the current actor's ID."""
    return get_current_actor().id


def set_current_actor(actor: Actor) -> None:
    """
    Set current actor in context.

    Called by the API middleware after the upstream identity is resolved.
    """
    _current_actor.set(actor)


def clear_current_actor() -> None:
    """
    Clear actor context.

    Must be called in a finally block to prevent context leakage between
    requests served by the same worker.
    """
    _current_actor.set(None)


@contextmanager
def actor_context(actor: Actor):
    """
    Context manager for temporarily setting the actor.

    Useful for tests and for external schedulers that trigger period
    generation on behalf of a service account.

    Example:
        with actor_context(Actor(id=ops_account_id, role=ActorRole.ADMIN)):
            earnings_service.generate_earnings(start, end)
    """
    previous = _current_actor.get()
    set_current_actor(actor)
    try:
        yield actor
    finally:
        if previous is None:
            clear_current_actor()
        else:
            set_current_actor(previous)
