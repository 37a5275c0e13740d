from __future__ import annotations

import logging
from typing import Optional, Union

from sqlalchemy.orm import Session

from depot import audit, ledger
from depot.enums import CylinderSize, CylinderStatus, MovementType, RefillStatus
from depot.errors import InvalidQuantity, InvalidTransition, NotFound
from depot.models import RefillBatch
from depot.numbering import day_prefix, next_reference
from depot.transitions import (
    REFILL_TRANSITIONS,
    check_expected,
    compare_and_set,
    ensure_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

ENTITY = "refill_batch"


def get_batch(db: Session, batch_id: int) -> RefillBatch:
    batch = db.get(RefillBatch, batch_id)
    if batch is None:
        raise NotFound("refill batch not found", batch_id=batch_id)
    return batch


def create_batch(
    db: Session,
    cylinder_size: Union[CylinderSize, str],
    planned_count: int,
    actor_id: int,
    notes: Optional[str] = None,
) -> RefillBatch:
    size = CylinderSize(cylinder_size)
    if planned_count <= 0:
        raise InvalidQuantity("planned_count must be positive", planned_count=planned_count)
    available = ledger.project_stock(db)[(size, CylinderStatus.EMPTY)]
    if available < planned_count:
        raise InvalidQuantity(
            f"not enough empty {size.value} cylinders: {available} available",
            available=available,
            planned_count=planned_count,
        )
    now = utcnow()
    batch = RefillBatch(
        batch_ref=next_reference(db, RefillBatch.batch_ref, day_prefix("FILL", now), 3),
        cylinder_size=size,
        planned_count=planned_count,
        status=RefillStatus.CREATED,
        quarantined=False,
        notes=notes,
        created_by=actor_id,
        created_at=now,
    )
    db.add(batch)
    db.flush()
    logger.info("Refill batch %s created: %d x %s", batch.batch_ref, planned_count, size.value)
    return batch


def _require(name: str, value: Optional[int], ceiling: int, ceiling_name: str) -> int:
    if value is None:
        raise InvalidQuantity(f"{name} is required for this stage", field=name)
    if value < 0:
        raise InvalidQuantity(f"{name} cannot be negative", field=name, value=value)
    if value > ceiling:
        raise InvalidQuantity(
            f"{name} ({value}) exceeds {ceiling_name} ({ceiling})",
            field=name,
            value=value,
            limit=ceiling,
        )
    return value


def transition_batch(
    db: Session,
    batch_id: int,
    target: Union[RefillStatus, str],
    actor_id: int,
    expected_status: Union[RefillStatus, str],
    *,
    inspected_count: Optional[int] = None,
    passed_inspection_count: Optional[int] = None,
    filled_count: Optional[int] = None,
    qc_passed_count: Optional[int] = None,
    reason: Optional[str] = None,
) -> RefillBatch:
    """Move a batch one stage forward (or to ``failed``).

    ``expected_status`` is the status the caller last read. A mismatch is
    rejected before anything is written, and the guarded write catches a
    caller that raced past the check.
    """
    target = RefillStatus(target)
    batch = get_batch(db, batch_id)
    current = batch.status
    check_expected(ENTITY, batch_id, RefillStatus(expected_status), current)
    ensure_transition(ENTITY, REFILL_TRANSITIONS, current, target)

    now = utcnow()
    values: dict = {}
    planned = batch.planned_count
    if target == RefillStatus.INSPECTING:
        values["inspection_started_at"] = now
    elif target == RefillStatus.FILLING:
        inspected = _require("inspected_count", planned if inspected_count is None else inspected_count,
                             planned, "planned_count")
        passed = _require("passed_inspection_count", passed_inspection_count, inspected, "inspected_count")
        if passed == 0:
            raise InvalidQuantity("no cylinders passed inspection; fail the batch instead")
        values.update(inspected_count=inspected, passed_inspection_count=passed, inspected_at=now)
    elif target == RefillStatus.QC:
        ceiling = min(planned, batch.passed_inspection_count or 0)
        filled = _require("filled_count", filled_count, ceiling, "passed_inspection_count")
        if filled == 0:
            raise InvalidQuantity("no cylinders were filled; fail the batch instead")
        values.update(filled_count=filled, filled_at=now)
    elif target == RefillStatus.PASSED:
        ceiling = min(planned, batch.filled_count or 0)
        qc_passed = _require("qc_passed_count", qc_passed_count, ceiling, "filled_count")
        if qc_passed == 0:
            raise InvalidQuantity("no cylinders passed QC; fail the batch instead")
        values.update(qc_passed_count=qc_passed, qc_at=now)
    elif target == RefillStatus.FAILED:
        if current == RefillStatus.INSPECTING and passed_inspection_count is not None:
            inspected = _require("inspected_count", planned if inspected_count is None else inspected_count,
                                 planned, "planned_count")
            values.update(
                inspected_count=inspected,
                passed_inspection_count=_require(
                    "passed_inspection_count", passed_inspection_count, inspected, "inspected_count"
                ),
                inspected_at=now,
            )
        if current == RefillStatus.QC and qc_passed_count is not None:
            values.update(
                qc_passed_count=_require("qc_passed_count", qc_passed_count, batch.filled_count or 0, "filled_count"),
                qc_at=now,
            )
        values.update(quarantined=True, failed_at=now, failure_reason=reason)
    elif target == RefillStatus.STOCKED:
        values.update(stocked_at=now, actual_filled_count=batch.qc_passed_count)

    compare_and_set(db, RefillBatch, batch_id, current, target, entity=ENTITY, **values)

    if target == RefillStatus.STOCKED:
        movement = ledger.append_movement(
            db,
            cylinder_size=batch.cylinder_size,
            movement_type=MovementType.FILLED,
            quantity=batch.qc_passed_count,
            actor_id=actor_id,
            related_batch_id=batch.id,
            notes=f"Batch {batch.batch_ref} stocked",
        )
        batch.stock_movement_id = movement.id
        db.flush()

    audit.record_transition(
        db, ENTITY, batch.id, batch.batch_ref, current, target, actor_id,
        details={key: value for key, value in values.items() if isinstance(value, (int, str))} or None,
    )
    logger.info(
        "Refill batch %s: %s -> %s by actor %s", batch.batch_ref, current.value, target.value, actor_id
    )
    return batch


def start_inspection(
    db: Session,
    batch_id: int,
    actor_id: int,
    expected_status: RefillStatus,
    checklist_id: Optional[int] = None,
) -> RefillBatch:
    batch = transition_batch(db, batch_id, RefillStatus.INSPECTING, actor_id, expected_status)
    if checklist_id is not None:
        batch.pre_fill_checklist_id = checklist_id
        db.flush()
    return batch


def complete_inspection(
    db: Session,
    batch_id: int,
    actor_id: int,
    expected_status: RefillStatus,
    passed_inspection_count: int,
    inspected_count: Optional[int] = None,
) -> RefillBatch:
    target = RefillStatus.FILLING if passed_inspection_count > 0 else RefillStatus.FAILED
    return transition_batch(
        db,
        batch_id,
        target,
        actor_id,
        expected_status,
        inspected_count=inspected_count,
        passed_inspection_count=passed_inspection_count,
        reason=None if target == RefillStatus.FILLING else "no cylinders passed inspection",
    )


def start_filling(
    db: Session,
    batch_id: int,
    actor_id: int,
    expected_status: RefillStatus,
    fill_station_id: Optional[str] = None,
) -> RefillBatch:
    """Record the fill station and start time; the batch stays in ``filling``."""
    batch = get_batch(db, batch_id)
    check_expected(ENTITY, batch_id, RefillStatus(expected_status), batch.status)
    if batch.status != RefillStatus.FILLING:
        raise InvalidTransition(
            ENTITY, batch.status.value, RefillStatus.FILLING.value, "batch must be in filling status to start filling"
        )
    compare_and_set(
        db,
        RefillBatch,
        batch_id,
        RefillStatus.FILLING,
        RefillStatus.FILLING,
        entity=ENTITY,
        fill_station_id=fill_station_id,
        fill_started_at=utcnow(),
    )
    audit.record_transition(
        db, ENTITY, batch.id, batch.batch_ref, RefillStatus.FILLING, RefillStatus.FILLING, actor_id,
        action="filling_started", details={"fill_station_id": fill_station_id},
    )
    logger.info("Refill batch %s filling started at station %s", batch.batch_ref, fill_station_id)
    return batch


def complete_filling(
    db: Session,
    batch_id: int,
    actor_id: int,
    expected_status: RefillStatus,
    filled_count: int,
) -> RefillBatch:
    return transition_batch(db, batch_id, RefillStatus.QC, actor_id, expected_status, filled_count=filled_count)


def complete_qc(
    db: Session,
    batch_id: int,
    actor_id: int,
    expected_status: RefillStatus,
    qc_passed_count: int,
) -> RefillBatch:
    target = RefillStatus.PASSED if qc_passed_count > 0 else RefillStatus.FAILED
    return transition_batch(
        db,
        batch_id,
        target,
        actor_id,
        expected_status,
        qc_passed_count=qc_passed_count,
        reason=None if target == RefillStatus.PASSED else "no cylinders passed QC",
    )


def stock_batch(
    db: Session,
    batch_id: int,
    actor_id: int,
    expected_status: RefillStatus,
) -> RefillBatch:
    return transition_batch(db, batch_id, RefillStatus.STOCKED, actor_id, expected_status)


def fail_batch(
    db: Session,
    batch_id: int,
    actor_id: int,
    expected_status: RefillStatus,
    reason: str,
) -> RefillBatch:
    return transition_batch(db, batch_id, RefillStatus.FAILED, actor_id, expected_status, reason=reason)
