from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, Optional, Union

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from depot import audit, ledger
from depot.config import settings
from depot.enums import CountStatus, CylinderSize, CylinderStatus, MovementType
from depot.errors import ApprovalNotPermitted, InvalidQuantity, NotFound, ValidationFailed
from depot.models import DailyCount, DailyCountItem
from depot.transitions import COUNT_TRANSITIONS, check_expected, compare_and_set, ensure_transition, utcnow

logger = logging.getLogger(__name__)

ENTITY = "daily_count"


def get_count(db: Session, count_id: int) -> DailyCount:
    count = db.get(DailyCount, count_id)
    if count is None:
        raise NotFound("daily count not found", count_id=count_id)
    return count


def submit_count(
    db: Session,
    count_date: date,
    items: Iterable[dict],
    actor_id: int,
    notes: Optional[str] = None,
) -> DailyCount:
    """Record physical counts against the current projection.

    A count with no variance is finalized immediately; otherwise it waits
    for review.
    """
    normalized: dict[tuple[CylinderSize, CylinderStatus], int] = {}
    for item in items:
        key = (CylinderSize(item["cylinder_size"]), CylinderStatus(item["status"]))
        if key in normalized:
            raise ValidationFailed(
                "each size and status may be counted once", cylinder_size=key[0].value, status=key[1].value
            )
        physical = item["physical_quantity"]
        if not isinstance(physical, int) or physical < 0:
            raise InvalidQuantity("physical quantity must be a non-negative integer", physical_quantity=physical)
        normalized[key] = physical
    if not normalized:
        raise ValidationFailed("a count needs at least one item")

    ledger.reserve_sizes(db, [size for size, _ in normalized])
    projection = ledger.project_stock(db)
    count = DailyCount(
        count_date=count_date,
        counted_by=actor_id,
        notes=notes,
        approval_status=CountStatus.PENDING_REVIEW,
        created_at=utcnow(),
    )
    for (size, status), physical in normalized.items():
        projected = projection[(size, status)]
        count.items.append(
            DailyCountItem(
                cylinder_size=size,
                status=status,
                physical_quantity=physical,
                projected_quantity=projected,
                variance=physical - projected,
            )
        )
    if all(item.variance == 0 for item in count.items):
        count.approval_status = CountStatus.FINALIZED
    db.add(count)
    db.flush()

    variances = [item for item in count.items if item.variance]
    if variances:
        logger.warning(
            "Daily count %s for %s has %d variances awaiting review", count.id, count_date, len(variances)
        )
    else:
        logger.info("Daily count %s for %s matched the ledger", count.id, count_date)
    return count


def review_count(
    db: Session,
    count_id: int,
    approved: bool,
    actor_id: int,
    expected_status: Union[CountStatus, str],
    notes: Optional[str] = None,
) -> DailyCount:
    """Approve or reject a count.

    Approval posts each variance to the ledger as a signed ``adjustment``
    linked to the count; rejection writes ``variance_rejected`` audit
    entries that leave stock alone.
    """
    expected = CountStatus(expected_status)
    target = CountStatus.APPROVED if approved else CountStatus.UNDER_INVESTIGATION
    count = get_count(db, count_id)
    check_expected(ENTITY, count_id, expected, count.approval_status)
    ensure_transition(ENTITY, COUNT_TRANSITIONS, expected, target)
    if settings.require_distinct_count_approver and actor_id == count.counted_by:
        logger.warning("Actor %s tried to review their own count %s", actor_id, count_id)
        raise ApprovalNotPermitted("a count must be reviewed by someone other than the counter", count_id=count_id)

    variances = [item for item in count.items if item.variance]
    ledger.reserve_sizes(db, [item.cylinder_size for item in variances])
    compare_and_set(
        db,
        DailyCount,
        count_id,
        expected,
        target,
        entity=ENTITY,
        status_attr="approval_status",
        reviewed_by=actor_id,
        reviewed_at=utcnow(),
        review_notes=notes,
    )

    for item in variances:
        note = f"Daily count {count.id} ({count.count_date}) {item.status.value}"
        if approved:
            ledger.append_signed(
                db,
                cylinder_size=item.cylinder_size,
                status=item.status,
                delta=item.variance,
                actor_id=actor_id,
                movement_type=MovementType.ADJUSTMENT,
                related_count_id=count.id,
                notes=note,
            )
        else:
            ledger.append_movement(
                db,
                cylinder_size=item.cylinder_size,
                movement_type=MovementType.VARIANCE_REJECTED,
                quantity=abs(item.variance),
                actor_id=actor_id,
                previous_status=item.status if item.variance < 0 else None,
                new_status=item.status if item.variance > 0 else None,
                related_count_id=count.id,
                notes=note,
            )
    db.flush()
    audit.record_transition(
        db, ENTITY, count.id, f"count {count.count_date}", expected, target, actor_id,
        action="reviewed", details={"notes": notes} if notes else None,
    )
    logger.info(
        "Daily count %s: %s -> %s by actor %s", count.id, expected.value, target.value, actor_id
    )
    return count


def list_counts(
    db: Session,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    has_variance: Optional[bool] = None,
    status: Optional[CountStatus] = None,
) -> list[DailyCount]:
    stmt = select(DailyCount)
    if date_from is not None:
        stmt = stmt.where(DailyCount.count_date >= date_from)
    if date_to is not None:
        stmt = stmt.where(DailyCount.count_date <= date_to)
    if status is not None:
        stmt = stmt.where(DailyCount.approval_status == status)
    if has_variance is not None:
        with_variance = exists().where(DailyCountItem.count_id == DailyCount.id, DailyCountItem.variance != 0)
        stmt = stmt.where(with_variance if has_variance else ~with_variance)
    return db.execute(stmt.order_by(DailyCount.count_date.desc(), DailyCount.id.desc())).scalars().all()
