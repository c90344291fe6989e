"""
Event router - maps (provider, event_type) to a handler coroutine.

An event type nobody registered for is a successful no-op (`skipped`), so a
provider adding new event types never produces failures or retries.

Handlers receive the payload as stored in the ledger. A retry replays that
stored copy, in which credential-like keys (client_secret, token, password and
similar) are already replaced by the redaction marker, so a handler must never
depend on those values.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hookledger.engine.state_machine import TransitionChange
from hookledger.schemas.results import HandlerResult

logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    """Everything a handler may touch for one claimed event."""
    db: AsyncSession
    provider: str
    event_id: str
    event_type: str
    record_id: Optional[uuid.UUID] = None
    # Status changes to hand to side-effect hooks once the transaction commits
    pending_changes: list[TransitionChange] = field(default_factory=list)


HandlerFn = Callable[[dict, HandlerContext], Awaitable[HandlerResult]]


class EventRouter:
    def __init__(self):
        self._handlers: dict[tuple[str, str], HandlerFn] = {}

    def register(self, provider: str, *event_types: str) -> Callable[[HandlerFn], HandlerFn]:
        """Decorator registering a handler for one or more event types."""
        def decorator(fn: HandlerFn) -> HandlerFn:
            for event_type in event_types:
                key = (provider, event_type)
                if key in self._handlers:
                    raise ValueError(f"Handler already registered for {provider} {event_type}")
                self._handlers[key] = fn
            return fn
        return decorator

    def handler_for(self, provider: str, event_type: str) -> Optional[HandlerFn]:
        return self._handlers.get((provider, event_type))

    def event_types(self, provider: str) -> list[str]:
        return sorted(t for p, t in self._handlers if p == provider)

    async def dispatch(self, event_type: str, payload: dict[str, Any], context: HandlerContext) -> HandlerResult:
        handler = self.handler_for(context.provider, event_type)
        if handler is None:
            logger.info(
                "No handler for %s event type %s, skipping", context.provider, event_type,
                extra={"provider": context.provider, "event_id": context.event_id, "event_type": event_type},
            )
            return HandlerResult(status="skipped", message=f"Unhandled event type: {event_type}")
        return await handler(payload, context)


_default_router: Optional[EventRouter] = None


def default_router() -> EventRouter:
    """Router with every shipped provider handler registered."""
    global _default_router
    if _default_router is None:
        from hookledger.engine.handlers import resend_handlers, stripe_handlers, twilio_handlers

        router = EventRouter()
        stripe_handlers.register(router)
        resend_handlers.register(router)
        twilio_handlers.register(router)
        _default_router = router
    return _default_router
