"""Utility modules for cross-cutting concerns."""

from utils.timezone import now_utc, to_utc, parse_iso, parse_boundary
from utils.actor_context import (
    Actor,
    ActorRole,
    get_current_actor,
    get_current_actor_id,
    set_current_actor,
    clear_current_actor,
    actor_context,
)
