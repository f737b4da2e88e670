"""
Synchronous dispatch of billing events.

Services publish after their transaction commits, so a handler can only
observe committed ledger state. Handler failures are logged and swallowed:
a stale partner cache must never turn a recorded payout into an error.
"""

import logging
from typing import Callable, Dict, List

from billing.events import BillingEvent

logger = logging.getLogger(__name__)

Handler = Callable[[BillingEvent], None]


def _concrete_events(base: type = BillingEvent) -> Dict[str, type]:
    """Publishable event classes by name: subclasses with no further subclasses."""
    found = {}
    for cls in base.__subclasses__():
        children = _concrete_events(cls)
        if children:
            found.update(children)
        else:
            found[cls.__name__] = cls
    return found


class EventBus:
    """
    Routes each published event to the handlers registered for its class.

    Handlers run in registration order, in the publisher's thread.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}

    def subscribe(self, event: type[BillingEvent] | str, handler: Handler) -> None:
        """
        Register a handler for one concrete event class.

        Args:
            event: The event class, or its name (e.g. 'PayoutPaid')
            handler: Called with each published instance

        Raises:
            ValueError: If the name is not a publishable billing event
        """
        name = event if isinstance(event, str) else event.__name__
        known = _concrete_events()
        if name not in known:
            raise ValueError(
                f"Unknown billing event '{name}'. Known events: {', '.join(sorted(known))}"
            )
        self._handlers.setdefault(name, []).append(handler)

    def publish(self, event: BillingEvent) -> None:
        name = type(event).__name__
        for handler in self._handlers.get(name, []):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "%s handler %s failed (event_id=%s)",
                    name,
                    getattr(handler, "__name__", repr(handler)),
                    event.event_id,
                )
