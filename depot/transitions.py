"""Transition tables for every workflow entity and the guarded status write.

Each table maps a current status to the statuses it may move to. A status
with no entry (or an empty set) is terminal. Writes go through
``compare_and_set`` so a concurrent change to the same row is detected by the
database rather than by a lock.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from depot.enums import CountStatus, OrderStatus, QuoteStatus, RefillStatus, RunStatus, StopStatus
from depot.errors import InvalidTransition, StaleTransition

REFILL_TRANSITIONS: dict[RefillStatus, frozenset[RefillStatus]] = {
    RefillStatus.CREATED: frozenset({RefillStatus.INSPECTING, RefillStatus.FAILED}),
    RefillStatus.INSPECTING: frozenset({RefillStatus.FILLING, RefillStatus.FAILED}),
    RefillStatus.FILLING: frozenset({RefillStatus.QC, RefillStatus.FAILED}),
    RefillStatus.QC: frozenset({RefillStatus.PASSED, RefillStatus.FAILED}),
    RefillStatus.PASSED: frozenset({RefillStatus.STOCKED}),
    RefillStatus.FAILED: frozenset(),
    RefillStatus.STOCKED: frozenset(),
}

QUOTE_TRANSITIONS: dict[QuoteStatus, frozenset[QuoteStatus]] = {
    QuoteStatus.DRAFT: frozenset({QuoteStatus.SENT, QuoteStatus.EXPIRED}),
    QuoteStatus.SENT: frozenset({QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.EXPIRED}),
    QuoteStatus.ACCEPTED: frozenset({QuoteStatus.CONVERTED}),
    QuoteStatus.REJECTED: frozenset(),
    QuoteStatus.EXPIRED: frozenset(),
    QuoteStatus.CONVERTED: frozenset(),
}

_C = OrderStatus.CANCELLED
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.SCHEDULED, _C}),
    OrderStatus.SCHEDULED: frozenset({OrderStatus.PREPARED, OrderStatus.CREATED, _C}),
    OrderStatus.PREPARED: frozenset({OrderStatus.LOADING, OrderStatus.SCHEDULED, _C}),
    OrderStatus.LOADING: frozenset({OrderStatus.DISPATCHED, OrderStatus.PREPARED, _C}),
    OrderStatus.DISPATCHED: frozenset({OrderStatus.IN_TRANSIT, OrderStatus.FAILED, _C}),
    OrderStatus.IN_TRANSIT: frozenset({OrderStatus.ARRIVED, OrderStatus.FAILED, _C}),
    OrderStatus.ARRIVED: frozenset(
        {OrderStatus.DELIVERED, OrderStatus.PARTIAL_DELIVERY, OrderStatus.FAILED, _C}
    ),
    OrderStatus.DELIVERED: frozenset({OrderStatus.CLOSED, _C}),
    OrderStatus.PARTIAL_DELIVERY: frozenset({OrderStatus.CLOSED, _C}),
    OrderStatus.FAILED: frozenset({OrderStatus.CLOSED, _C}),
    OrderStatus.CLOSED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Transitions into these statuses need the Checklist Gate to be clear.
ORDER_SAFETY_GATED = frozenset({OrderStatus.DISPATCHED})

RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PLANNED: frozenset({RunStatus.READY, RunStatus.CANCELLED}),
    RunStatus.READY: frozenset({RunStatus.IN_PROGRESS, RunStatus.PLANNED, RunStatus.CANCELLED}),
    RunStatus.IN_PROGRESS: frozenset({RunStatus.COMPLETED, RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}

RUN_SAFETY_GATED = frozenset({RunStatus.IN_PROGRESS})

STOP_TRANSITIONS: dict[StopStatus, frozenset[StopStatus]] = {
    StopStatus.PENDING: frozenset({StopStatus.IN_PROGRESS, StopStatus.SKIPPED}),
    StopStatus.IN_PROGRESS: frozenset({StopStatus.COMPLETED, StopStatus.SKIPPED, StopStatus.FAILED}),
    StopStatus.COMPLETED: frozenset(),
    StopStatus.SKIPPED: frozenset(),
    StopStatus.FAILED: frozenset(),
}

COUNT_TRANSITIONS: dict[CountStatus, frozenset[CountStatus]] = {
    CountStatus.PENDING_REVIEW: frozenset({CountStatus.APPROVED, CountStatus.UNDER_INVESTIGATION}),
    CountStatus.UNDER_INVESTIGATION: frozenset({CountStatus.APPROVED}),
    CountStatus.APPROVED: frozenset(),
    CountStatus.FINALIZED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_terminal(table: Mapping[Enum, frozenset], status: Enum) -> bool:
    return not table.get(status)


def ensure_transition(entity: str, table: Mapping[Enum, frozenset], current: Enum, requested: Enum) -> None:
    if requested not in table.get(current, frozenset()):
        raise InvalidTransition(entity, current.value, requested.value)


def check_expected(entity: str, entity_id: int, expected: Enum, actual: Enum) -> None:
    if expected != actual:
        raise StaleTransition(entity, entity_id, expected.value, actual.value)


def compare_and_set(
    db: Session,
    model: Any,
    entity_id: int,
    expected: Enum,
    new: Enum,
    entity: Optional[str] = None,
    status_attr: str = "status",
    **values: Any,
) -> None:
    """Write ``new`` only if the stored status is still ``expected``.

    The row count of the guarded UPDATE is the arbiter: zero rows means
    someone else moved the entity first.
    """
    column = getattr(model, status_attr)
    stmt = (
        update(model)
        .where(model.id == entity_id, column == expected)
        .values({status_attr: new, **values})
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        row = db.get(model, entity_id, populate_existing=True)
        actual = getattr(row, status_attr).value if row is not None else None
        raise StaleTransition(entity or model.__tablename__, entity_id, expected.value, actual)
    # Any copy already in the session reloads the written columns on next access.
    row = db.identity_map.get(db.identity_key(model, entity_id))
    if row is not None:
        db.expire(row, [status_attr, *values])
