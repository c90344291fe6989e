"""
State-machine validator for domain resource status fields.

Every status write to a Payment, Subscription, EmailLog or SmsLog goes through
apply_transition(), which:
1. validates the edge against the kind's transition table (no mutation on reject),
2. writes with a compare-and-set UPDATE guarded by the status it validated,
3. queues a TransitionChange for side-effect hooks that run after commit.

A same-status transition is an idempotent no-op: it succeeds, writes nothing
and fires no hooks.
"""
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from hookledger.engine.errors import ConcurrentModificationError, InvalidTransitionError
from hookledger.engine.statuses import ResourceKind, TRANSITION_TABLES

logger = logging.getLogger(__name__)


def _table(kind: ResourceKind) -> dict[str, frozenset[str]]:
    try:
        return TRANSITION_TABLES[ResourceKind(kind)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown resource kind: {kind}")


def allowed_transitions(kind: ResourceKind, status: str) -> frozenset[str]:
    return _table(kind).get(status, frozenset())


def is_terminal(kind: ResourceKind, status: str) -> bool:
    table = _table(kind)
    return status in table and not table[status]


def validate_transition(kind: ResourceKind, current: str, proposed: str) -> bool:
    """
    Check a status edge for a resource kind.

    Returns True for a real change, False for the same-status no-op.
    Raises InvalidTransitionError for an edge not in the table, including any
    edge out of a terminal status and any status unknown to the kind.
    """
    table = _table(kind)
    kind_name = ResourceKind(kind).value
    if current not in table or proposed not in table:
        raise InvalidTransitionError(kind_name, current, proposed)
    if current == proposed:
        return False
    if proposed not in table[current]:
        raise InvalidTransitionError(kind_name, current, proposed)
    return True


@dataclass(frozen=True)
class TransitionChange:
    """A committed status change, handed to side-effect hooks."""
    kind: ResourceKind
    resource_id: uuid.UUID
    previous: str
    current: str
    provider: Optional[str] = None
    event_id: Optional[str] = None


HookFn = Callable[[TransitionChange], Awaitable[None]]


class TransitionHooks:
    """
    Registry of side effects keyed by (kind, new status), e.g. "notify the
    customer when an email bounces". Hooks run only for committed, real changes.
    """

    def __init__(self):
        self._hooks: dict[tuple[str, str], list[HookFn]] = defaultdict(list)

    def on(self, kind: ResourceKind, status: str) -> Callable[[HookFn], HookFn]:
        def decorator(fn: HookFn) -> HookFn:
            self._hooks[(ResourceKind(kind).value, status)].append(fn)
            return fn
        return decorator

    def hooks_for(self, kind: ResourceKind, status: str) -> list[HookFn]:
        return list(self._hooks.get((ResourceKind(kind).value, status), ()))

    async def fire(self, change: TransitionChange) -> int:
        """Run hooks for a change. A failing hook is logged and does not stop the rest."""
        fired = 0
        for hook in self.hooks_for(change.kind, change.current):
            try:
                await hook(change)
                fired += 1
            except Exception as e:
                logger.error(
                    "Transition hook %s failed for %s %s -> %s: %s",
                    getattr(hook, "__name__", repr(hook)),
                    change.kind.value, change.previous, change.current, str(e),
                    exc_info=True,
                )
        return fired


async def apply_transition(
    db: AsyncSession,
    resource: Any,
    proposed: str,
    *,
    changes: Optional[dict] = None,
    pending_changes: Optional[list[TransitionChange]] = None,
    provider: Optional[str] = None,
    event_id: Optional[str] = None,
) -> bool:
    """
    Move `resource` to `proposed` with a compare-and-set update.

    `changes` are extra column values written in the same statement (only on a
    real change). The resulting TransitionChange is appended to
    `pending_changes` for the caller to fire after commit.

    Returns True if the status changed, False for an idempotent no-op.
    Raises InvalidTransitionError (nothing written) or ConcurrentModificationError.
    """
    kind = resource.resource_kind
    model = type(resource)

    # One retry after losing a race: re-read, re-validate against the winner.
    for attempt in range(2):
        current = resource.status
        if not validate_transition(kind, current, proposed):
            logger.debug(
                "Idempotent %s transition %s -> %s for %s",
                kind.value, current, proposed, resource.id,
            )
            return False

        values = {"status": proposed, "updated_at": datetime.now(timezone.utc)}
        if changes:
            values.update(changes)

        result = await db.execute(
            update(model)
            .where(model.id == resource.id, model.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(resource)

        if result.rowcount == 1:
            logger.info(
                "%s %s: %s -> %s", kind.value, resource.id, current, proposed,
                extra={"resource_kind": kind.value, "status": proposed, "event_id": event_id},
            )
            if pending_changes is not None:
                pending_changes.append(TransitionChange(
                    kind=kind,
                    resource_id=resource.id,
                    previous=current,
                    current=proposed,
                    provider=provider,
                    event_id=event_id,
                ))
            return True

        logger.warning(
            "Lost %s status race for %s (expected %s, now %s), attempt %d",
            kind.value, resource.id, current, resource.status, attempt + 1,
        )

    raise ConcurrentModificationError(
        f"{kind.value} {resource.id} kept changing while moving to {proposed}",
        provider=provider,
        event_id=event_id,
    )


# Application-wide hook registry used by the processing pipeline
transition_hooks = TransitionHooks()
