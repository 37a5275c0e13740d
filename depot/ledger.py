"""Cylinder movement ledger and the stock projection folded from it.

The ledger is the only source of truth for stock. ``stock_balance`` rows are
a running total kept in step with every append inside the same transaction;
``rebuild_balances`` can always recompute them from the entries.

Appends for one cylinder size are serialized: a re-entrant lock per size is
taken on the first append in a session and released when that session's
transaction ends, and the size's balance rows are read ``FOR UPDATE`` where
the database supports it. The non-negativity check and the write therefore
see a consistent total.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Union
from uuid import uuid4

from sqlalchemy import event, select
from sqlalchemy.orm import Session

from depot.config import settings
from depot.enums import CylinderSize, CylinderStatus, MovementType
from depot.errors import InvalidMovement, LedgerBusy
from depot.models import CylinderMovement, StockBalance
from depot.transitions import utcnow

logger = logging.getLogger(__name__)

StockKey = tuple[CylinderSize, CylinderStatus]


@dataclass(frozen=True)
class MovementRule:
    source: Optional[CylinderStatus] = None
    target: Optional[CylinderStatus] = None
    source_choices: frozenset = frozenset()
    target_choices: frozenset = frozenset()
    signed: bool = False
    counts_stock: bool = True


_ANY_STATUS = frozenset(CylinderStatus)

MOVEMENT_RULES: dict[MovementType, MovementRule] = {
    MovementType.RECEIVED: MovementRule(target=CylinderStatus.EMPTY, target_choices=_ANY_STATUS),
    MovementType.INITIAL_STOCK: MovementRule(target=CylinderStatus.FULL, target_choices=_ANY_STATUS),
    MovementType.TRANSFER_IN: MovementRule(target=CylinderStatus.FULL, target_choices=_ANY_STATUS),
    MovementType.FILLED: MovementRule(source=CylinderStatus.EMPTY, target=CylinderStatus.FULL),
    MovementType.RETURNED_FULL: MovementRule(source=CylinderStatus.ISSUED, target=CylinderStatus.FULL),
    MovementType.ISSUED_TO_DELIVERY: MovementRule(source=CylinderStatus.FULL, target=CylinderStatus.ISSUED),
    MovementType.DELIVERED: MovementRule(source=CylinderStatus.ISSUED, target=CylinderStatus.AT_CUSTOMER),
    MovementType.SCRAPPED: MovementRule(source=CylinderStatus.DAMAGED, source_choices=_ANY_STATUS),
    MovementType.TRANSFER_OUT: MovementRule(source=CylinderStatus.FULL, source_choices=_ANY_STATUS),
    MovementType.RETURNED_EMPTY: MovementRule(source=CylinderStatus.AT_CUSTOMER, target=CylinderStatus.EMPTY),
    MovementType.COLLECTED_EMPTY: MovementRule(source=CylinderStatus.AT_CUSTOMER, target=CylinderStatus.EMPTY),
    MovementType.DAMAGED: MovementRule(
        source=CylinderStatus.FULL,
        source_choices=frozenset({CylinderStatus.FULL, CylinderStatus.EMPTY}),
        target=CylinderStatus.DAMAGED,
    ),
    MovementType.ADJUSTMENT: MovementRule(signed=True),
    MovementType.VARIANCE_APPROVED: MovementRule(signed=True),
    MovementType.VARIANCE_REJECTED: MovementRule(counts_stock=False),
    MovementType.DEPOSIT_PAID: MovementRule(counts_stock=False),
    MovementType.DEPOSIT_REFUNDED: MovementRule(counts_stock=False),
}

# Movement types that bring cylinders into, or take them out of, the fleet.
INFLOW_TYPES = frozenset({MovementType.RECEIVED, MovementType.INITIAL_STOCK, MovementType.TRANSFER_IN})
OUTFLOW_TYPES = frozenset({MovementType.SCRAPPED, MovementType.TRANSFER_OUT})

_SIZE_LOCKS: dict[CylinderSize, threading.RLock] = {size: threading.RLock() for size in CylinderSize}
_HELD_LOCKS = "depot.ledger.held_locks"
_SIZE_ORDER = {size: index for index, size in enumerate(CylinderSize)}


def reserve_sizes(db: Session, sizes: Iterable[Union[CylinderSize, str]]) -> None:
    """Take the append locks for ``sizes`` until the session's transaction ends.

    Locks are always taken in ``CylinderSize`` declaration order, so an
    operation that appends for several sizes reserves all of them here
    first. A later request for a size that sorts before one already held
    cannot wait without risking a deadlock: it is taken only if free, and
    otherwise the operation fails with ``LedgerBusy`` and is rolled back.
    """
    if not db.in_transaction():
        db.begin()
    held: list[CylinderSize] = db.info.setdefault(_HELD_LOCKS, [])
    for size in sorted({CylinderSize(s) for s in sizes}, key=_SIZE_ORDER.__getitem__):
        if size in held:
            continue
        lock = _SIZE_LOCKS[size]
        if held and _SIZE_ORDER[size] < max(_SIZE_ORDER[h] for h in held):
            if not lock.acquire(blocking=False):
                raise LedgerBusy(
                    f"{size.value} ledger is busy; retry the operation",
                    cylinder_size=size.value,
                    held_sizes=[h.value for h in held],
                )
        else:
            lock.acquire()
        held.append(size)


@event.listens_for(Session, "after_transaction_end")
def _release_size_locks(session: Session, transaction) -> None:
    if transaction.parent is not None:
        return
    held = session.info.pop(_HELD_LOCKS, None)
    for size in reversed(held or []):
        _SIZE_LOCKS[size].release()


def resolve_statuses(
    movement_type: MovementType,
    previous_status: Optional[CylinderStatus] = None,
    new_status: Optional[CylinderStatus] = None,
) -> tuple[Optional[CylinderStatus], Optional[CylinderStatus]]:
    rule = MOVEMENT_RULES[movement_type]
    if not rule.counts_stock:
        return previous_status, new_status
    if rule.signed:
        if (previous_status is None) == (new_status is None):
            raise InvalidMovement(
                f"{movement_type.value} needs exactly one of previous_status or new_status",
                movement_type=movement_type.value,
            )
        return previous_status, new_status

    source, target = rule.source, rule.target
    if previous_status is not None and previous_status != source:
        if previous_status not in rule.source_choices:
            raise InvalidMovement(
                f"{movement_type.value} cannot take stock from {previous_status.value}",
                movement_type=movement_type.value,
            )
        source = previous_status
    if new_status is not None and new_status != target:
        if new_status not in rule.target_choices:
            raise InvalidMovement(
                f"{movement_type.value} cannot put stock into {new_status.value}",
                movement_type=movement_type.value,
            )
        target = new_status
    return source, target


def movement_effects(
    movement_type: MovementType,
    quantity: int,
    previous_status: Optional[CylinderStatus],
    new_status: Optional[CylinderStatus],
) -> dict[CylinderStatus, int]:
    if not MOVEMENT_RULES[movement_type].counts_stock:
        return {}
    effects: dict[CylinderStatus, int] = {}
    if previous_status is not None:
        effects[previous_status] = effects.get(previous_status, 0) - quantity
    if new_status is not None:
        effects[new_status] = effects.get(new_status, 0) + quantity
    return effects


def signed_quantity(movement: CylinderMovement) -> int:
    """Net change in fleet size carried by one entry (zero for internal moves)."""
    return sum(
        movement_effects(
            movement.movement_type, movement.quantity, movement.previous_status, movement.new_status
        ).values()
    )


def empty_projection() -> dict[StockKey, int]:
    return {(size, status): 0 for size in CylinderSize for status in CylinderStatus}


def fold_movements(movements: Iterable[CylinderMovement]) -> dict[StockKey, int]:
    projection = empty_projection()
    for movement in movements:
        effects = movement_effects(
            movement.movement_type, movement.quantity, movement.previous_status, movement.new_status
        )
        for status, delta in effects.items():
            projection[(movement.cylinder_size, status)] += delta
    return projection


def fleet_size_from_flows(movements: Iterable[CylinderMovement]) -> dict[CylinderSize, int]:
    """Cylinders ever brought in minus cylinders ever taken out, per size."""
    totals = {size: 0 for size in CylinderSize}
    for movement in movements:
        if movement.movement_type in INFLOW_TYPES:
            totals[movement.cylinder_size] += movement.quantity
        elif movement.movement_type in OUTFLOW_TYPES:
            totals[movement.cylinder_size] -= movement.quantity
        elif MOVEMENT_RULES[movement.movement_type].signed:
            totals[movement.cylinder_size] += signed_quantity(movement)
    return totals


def _balances_for_update(db: Session, size: CylinderSize) -> dict[CylinderStatus, StockBalance]:
    rows = db.execute(
        select(StockBalance).where(StockBalance.cylinder_size == size).with_for_update()
    ).scalars().all()
    balances = {row.status: row for row in rows}
    missing = [status for status in CylinderStatus if status not in balances]
    if missing:
        now = utcnow()
        for status in missing:
            row = StockBalance(cylinder_size=size, status=status, quantity=0, updated_at=now)
            db.add(row)
            balances[status] = row
        db.flush()
    return balances


def append_movement(
    db: Session,
    *,
    cylinder_size: Union[CylinderSize, str],
    movement_type: Union[MovementType, str],
    quantity: int,
    actor_id: int,
    previous_status: Optional[Union[CylinderStatus, str]] = None,
    new_status: Optional[Union[CylinderStatus, str]] = None,
    related_order_id: Optional[int] = None,
    related_batch_id: Optional[int] = None,
    related_run_id: Optional[int] = None,
    related_count_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> CylinderMovement:
    """Validate and append one entry, updating the running balances.

    Raises ``InvalidMovement`` before writing anything if the quantity is not
    positive or any bucket for the size would go negative. The caller owns
    the transaction.
    """
    size = CylinderSize(cylinder_size)
    mtype = MovementType(movement_type)
    prev = CylinderStatus(previous_status) if previous_status is not None else None
    new = CylinderStatus(new_status) if new_status is not None else None
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise InvalidMovement("quantity must be a positive integer", quantity=quantity)
    prev, new = resolve_statuses(mtype, prev, new)
    effects = movement_effects(mtype, quantity, prev, new)

    reserve_sizes(db, [size])
    balances = _balances_for_update(db, size)
    for status, delta in effects.items():
        available = balances[status].quantity
        if available + delta < 0:
            logger.warning(
                "Rejected %s of %d x %s: %s has %d", mtype.value, quantity, size.value, status.value, available
            )
            raise InvalidMovement(
                f"not enough {status.value} {size.value} cylinders: {available} available, {-delta} required",
                cylinder_size=size.value,
                status=status.value,
                available=available,
                requested=-delta,
            )

    now = utcnow()
    for status, delta in effects.items():
        balances[status].quantity += delta
        balances[status].updated_at = now
    movement = CylinderMovement(
        movement_ref=f"MOV-{now:%Y%m%d}-{uuid4().hex[:8].upper()}",
        cylinder_size=size,
        movement_type=mtype,
        quantity=quantity,
        previous_status=prev,
        new_status=new,
        related_order_id=related_order_id,
        related_batch_id=related_batch_id,
        related_run_id=related_run_id,
        related_count_id=related_count_id,
        actor_id=actor_id,
        notes=notes,
        created_at=now,
    )
    db.add(movement)
    db.flush()
    logger.info(
        "Ledger %s: %s %d x %s (%s -> %s) by actor %s",
        movement.movement_ref,
        mtype.value,
        quantity,
        size.value,
        prev.value if prev else "-",
        new.value if new else "-",
        actor_id,
    )
    return movement


def append_signed(
    db: Session,
    *,
    cylinder_size: Union[CylinderSize, str],
    status: Union[CylinderStatus, str],
    delta: int,
    actor_id: int,
    movement_type: MovementType = MovementType.ADJUSTMENT,
    related_count_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> CylinderMovement:
    """Append an adjustment-style entry carrying a signed delta on one status."""
    if not MOVEMENT_RULES[movement_type].signed:
        raise InvalidMovement(f"{movement_type.value} does not carry a signed delta")
    if delta == 0:
        raise InvalidMovement("adjustment delta must be non-zero", delta=delta)
    status = CylinderStatus(status)
    return append_movement(
        db,
        cylinder_size=cylinder_size,
        movement_type=movement_type,
        quantity=abs(delta),
        actor_id=actor_id,
        previous_status=status if delta < 0 else None,
        new_status=status if delta > 0 else None,
        related_count_id=related_count_id,
        notes=notes,
    )


def project_stock(db: Session, as_of: Optional[datetime] = None) -> dict[StockKey, int]:
    """Stock per (size, status). Without ``as_of`` the running balances answer."""
    if as_of is None:
        projection = empty_projection()
        for row in db.execute(select(StockBalance)).scalars():
            projection[(row.cylinder_size, row.status)] = row.quantity
        return projection
    movements = db.execute(
        select(CylinderMovement).where(CylinderMovement.created_at <= as_of).order_by(CylinderMovement.id)
    ).scalars()
    return fold_movements(movements)


def fold_ledger(db: Session) -> dict[StockKey, int]:
    return fold_movements(db.execute(select(CylinderMovement).order_by(CylinderMovement.id)).scalars())


def rebuild_balances(db: Session) -> list[StockKey]:
    """Recompute balances from the ledger; returns the keys that had drifted."""
    reserve_sizes(db, list(CylinderSize))
    folded = fold_ledger(db)
    drifted: list[StockKey] = []
    now = utcnow()
    for size in CylinderSize:
        balances = _balances_for_update(db, size)
        for status, row in balances.items():
            expected = folded[(size, status)]
            if row.quantity != expected:
                drifted.append((size, status))
                logger.warning(
                    "Stock balance %s/%s drifted: %d, ledger says %d",
                    size.value, status.value, row.quantity, expected,
                )
                row.quantity = expected
                row.updated_at = now
    db.flush()
    return drifted


def stock_summary(projection: dict[StockKey, int]) -> dict:
    by_size: dict[str, dict[str, int]] = {}
    totals: dict[str, int] = {}
    for (size, status), quantity in projection.items():
        by_size.setdefault(size.value, {})[status.value] = quantity
        totals[size.value] = totals.get(size.value, 0) + quantity
    return {"by_size": by_size, "totals": totals}


def low_stock_alerts(db: Session, threshold: Optional[int] = None) -> list[dict]:
    limit = settings.low_stock_threshold if threshold is None else threshold
    projection = project_stock(db)
    return [
        {
            "cylinder_size": size.value,
            "status": CylinderStatus.FULL.value,
            "quantity": projection[(size, CylinderStatus.FULL)],
            "threshold": limit,
        }
        for size in CylinderSize
        if projection[(size, CylinderStatus.FULL)] < limit
    ]
