"""Delivery runs and their stops.

A run carries its orders through the pre-dispatch statuses: creating it
schedules them, loading walks them to ``loading`` and issues the stock in one
go, starting it dispatches them. Stop outcomes are written back to the
order together with the ledger entries. When the last stop finishes the run
completes itself and any spare loaded stock comes back full.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Iterable, Optional, Union

from sqlalchemy.orm import Session

from depot import audit, checklists, ledger
from depot.enums import ChecklistEntity, CylinderSize, MovementType, OrderStatus, RunStatus, StopStatus
from depot.errors import InvalidQuantity, InvalidTransition, NotFound, ValidationFailed
from depot.models import Order, ScheduleRun, ScheduleStop
from depot.numbering import day_prefix, next_reference
from depot.orders import cylinder_quantities, get_order, outcome_for, transition_order, walk_order
from depot.transitions import (
    RUN_SAFETY_GATED,
    RUN_TRANSITIONS,
    STOP_TRANSITIONS,
    check_expected,
    compare_and_set,
    ensure_transition,
    is_terminal,
    utcnow,
)

logger = logging.getLogger(__name__)

_EDITABLE = frozenset({RunStatus.PLANNED, RunStatus.READY})
_READY_ORDER_STATUSES = frozenset({OrderStatus.SCHEDULED, OrderStatus.PREPARED, OrderStatus.LOADING})
_ON_THE_ROAD = frozenset({OrderStatus.DISPATCHED, OrderStatus.IN_TRANSIT, OrderStatus.ARRIVED})
_LOAD_PATH = (OrderStatus.PREPARED, OrderStatus.LOADING)
_RELEASE_PATH = (OrderStatus.PREPARED, OrderStatus.SCHEDULED, OrderStatus.CREATED)


def get_run(db: Session, run_id: int) -> ScheduleRun:
    run = db.get(ScheduleRun, run_id)
    if run is None:
        raise NotFound("schedule run not found", run_id=run_id)
    return run


def get_stop(db: Session, run_id: int, stop_id: int) -> ScheduleStop:
    stop = db.get(ScheduleStop, stop_id)
    if stop is None or stop.run_id != run_id:
        raise NotFound("stop not found on this run", run_id=run_id, stop_id=stop_id)
    return stop


def _ensure_editable(run: ScheduleRun) -> None:
    if run.status not in _EDITABLE:
        raise ValidationFailed(
            f"stops can only change while the run is planned or ready, not {run.status.value}", run_id=run.id
        )
    if run.loaded_at is not None:
        raise ValidationFailed("the run is already loaded", run_id=run.id)


def _schedule_order(db: Session, run: ScheduleRun, order: Order, actor_id: int) -> None:
    if order.schedule_run_id not in (None, run.id):
        raise ValidationFailed(
            f"order {order.order_number} is already on another run",
            order_id=order.id,
            schedule_run_id=order.schedule_run_id,
        )
    if order.status == OrderStatus.CREATED:
        transition_order(db, order.id, OrderStatus.SCHEDULED, OrderStatus.CREATED, actor_id)
    elif order.status not in (OrderStatus.SCHEDULED, OrderStatus.PREPARED):
        raise ValidationFailed(
            f"order {order.order_number} is {order.status.value} and cannot join a run", order_id=order.id
        )
    order.schedule_run_id = run.id
    order.driver_id = run.driver_id
    order.vehicle_id = run.vehicle_id


def _release_order(db: Session, order: Order, actor_id: int) -> None:
    if order.status in (OrderStatus.SCHEDULED, OrderStatus.PREPARED, OrderStatus.LOADING):
        walk_order(db, order, _RELEASE_PATH, actor_id)


def _resequence(run: ScheduleRun) -> None:
    for sequence, stop in enumerate(sorted(run.stops, key=lambda s: s.sequence), start=1):
        stop.sequence = sequence


def create_run(
    db: Session,
    run_date: date,
    actor_id: int,
    vehicle_id: Optional[int] = None,
    driver_id: Optional[int] = None,
    order_ids: Iterable[int] = (),
    notes: Optional[str] = None,
) -> ScheduleRun:
    order_ids = list(order_ids)
    if len(set(order_ids)) != len(order_ids):
        raise ValidationFailed("an order can appear only once on a run")
    run = ScheduleRun(
        run_number=next_reference(db, ScheduleRun.run_number, day_prefix("RUN", run_date), 3),
        run_date=run_date,
        vehicle_id=vehicle_id,
        driver_id=driver_id,
        status=RunStatus.PLANNED,
        notes=notes,
        created_by=actor_id,
        created_at=utcnow(),
    )
    db.add(run)
    db.flush()
    for sequence, order_id in enumerate(order_ids, start=1):
        order = get_order(db, order_id)
        _schedule_order(db, run, order, actor_id)
        run.stops.append(ScheduleStop(order_id=order.id, sequence=sequence, status=StopStatus.PENDING))
    db.flush()
    logger.info("Run %s created for %s with %d stops", run.run_number, run_date, len(order_ids))
    return run


def add_stop(
    db: Session,
    run_id: int,
    order_id: int,
    actor_id: int,
    sequence: Optional[int] = None,
    estimated_arrival: Optional[datetime] = None,
) -> ScheduleStop:
    run = get_run(db, run_id)
    _ensure_editable(run)
    if any(stop.order_id == order_id for stop in run.stops):
        raise ValidationFailed("order is already on this run", order_id=order_id)
    order = get_order(db, order_id)
    _schedule_order(db, run, order, actor_id)

    last = len(run.stops)
    if sequence is None or sequence > last:
        sequence = last + 1
    if sequence < 1:
        raise ValidationFailed("sequence starts at 1", sequence=sequence)
    for stop in run.stops:
        if stop.sequence >= sequence:
            stop.sequence += 1
    stop = ScheduleStop(
        order_id=order.id, sequence=sequence, status=StopStatus.PENDING, estimated_arrival=estimated_arrival
    )
    run.stops.append(stop)
    db.flush()
    logger.info("Run %s: order %s added as stop %d", run.run_number, order.order_number, sequence)
    return stop


def remove_stop(db: Session, run_id: int, stop_id: int, actor_id: int) -> ScheduleRun:
    run = get_run(db, run_id)
    _ensure_editable(run)
    stop = get_stop(db, run_id, stop_id)
    order = get_order(db, stop.order_id)
    _release_order(db, order, actor_id)
    run.stops.remove(stop)
    _resequence(run)
    db.flush()
    logger.info("Run %s: stop for order %s removed", run.run_number, order.order_number)
    return run


def reorder_stops(db: Session, run_id: int, stop_ids: list[int], actor_id: int) -> ScheduleRun:
    run = get_run(db, run_id)
    _ensure_editable(run)
    current = {stop.id: stop for stop in run.stops}
    if sorted(stop_ids) != sorted(current):
        raise ValidationFailed("reorder must list every stop on the run exactly once", stop_ids=stop_ids)
    for sequence, stop_id in enumerate(stop_ids, start=1):
        current[stop_id].sequence = sequence
    db.flush()
    logger.info("Run %s reordered by actor %s", run.run_number, actor_id)
    return run


def validate_ready(db: Session, run: ScheduleRun) -> None:
    """Raise ``ValidationFailed`` listing why the run cannot be ready."""
    problems = []
    if not run.stops:
        problems.append("run has no stops")
    sequences = sorted(stop.sequence for stop in run.stops)
    if sequences != list(range(1, len(sequences) + 1)):
        problems.append(f"stop sequences must be 1..{len(sequences)} without gaps, got {sequences}")
    if run.driver_id is None:
        problems.append("no driver assigned")
    if run.vehicle_id is None:
        problems.append("no vehicle assigned")
    for stop in run.stops:
        order = get_order(db, stop.order_id)
        if order.status not in _READY_ORDER_STATUSES:
            problems.append(f"order {order.order_number} is {order.status.value}")
    if problems:
        raise ValidationFailed("run is not ready", run_id=run.id, problems=problems)


def run_requirements(db: Session, run: ScheduleRun) -> dict[CylinderSize, int]:
    needs: dict[CylinderSize, int] = defaultdict(int)
    for stop in run.stops:
        for size, quantity in cylinder_quantities(get_order(db, stop.order_id).items).items():
            needs[size] += quantity
    return dict(needs)


def complete_loading(
    db: Session,
    run_id: int,
    loaded_quantities: dict,
    actor_id: int,
    expected_status: Union[RunStatus, str],
) -> ScheduleRun:
    """Issue the loaded stock for the whole run and walk its orders to ``loading``."""
    run = get_run(db, run_id)
    check_expected("schedule_run", run_id, RunStatus(expected_status), run.status)
    if run.status != RunStatus.READY:
        raise InvalidTransition(
            "schedule_run", run.status.value, RunStatus.READY.value, "loading needs a ready run"
        )
    if run.loaded_at is not None:
        raise ValidationFailed("the run is already loaded", run_id=run_id)

    loaded = {CylinderSize(size): quantity for size, quantity in loaded_quantities.items()}
    for size, quantity in loaded.items():
        if not isinstance(quantity, int) or quantity < 0:
            raise InvalidQuantity("loaded quantities must be non-negative integers", cylinder_size=size.value)
    needs = run_requirements(db, run)
    short = {
        size.value: {"needed": needed, "loaded": loaded.get(size, 0)}
        for size, needed in needs.items()
        if loaded.get(size, 0) < needed
    }
    if short:
        raise InvalidQuantity("loaded quantities do not cover the run's orders", shortfall=short)

    now = utcnow()
    ledger.reserve_sizes(db, set(loaded) | set(needs))
    compare_and_set(
        db,
        ScheduleRun,
        run_id,
        RunStatus.READY,
        RunStatus.READY,
        entity="schedule_run",
        loaded_quantities={size.value: quantity for size, quantity in loaded.items()},
        loaded_at=now,
    )
    for size in sorted(loaded, key=lambda s: s.value):
        if loaded[size] > 0:
            ledger.append_movement(
                db,
                cylinder_size=size,
                movement_type=MovementType.ISSUED_TO_DELIVERY,
                quantity=loaded[size],
                actor_id=actor_id,
                related_run_id=run.id,
                notes=f"Run {run.run_number} loaded",
            )
    for stop in run.stops:
        order = get_order(db, stop.order_id)
        walk_order(db, order, _LOAD_PATH, actor_id)
        order.stock_issued = True
    db.flush()
    audit.record_transition(
        db, "schedule_run", run.id, run.run_number, RunStatus.READY, RunStatus.READY, actor_id,
        action="loaded", details={"loaded_quantities": run.loaded_quantities},
    )
    logger.info("Run %s loaded: %s", run.run_number, run.loaded_quantities)
    return run


def _return_spare(db: Session, run: ScheduleRun, actor_id: int) -> None:
    if not run.loaded_quantities:
        return
    spare = {CylinderSize(size): quantity for size, quantity in run.loaded_quantities.items()}
    for stop in run.stops:
        order = get_order(db, stop.order_id)
        if order.stock_issued:
            for size, quantity in cylinder_quantities(order.items).items():
                spare[size] = spare.get(size, 0) - quantity
    for size in sorted(spare, key=lambda s: s.value):
        if spare[size] > 0:
            ledger.append_movement(
                db,
                cylinder_size=size,
                movement_type=MovementType.RETURNED_FULL,
                quantity=spare[size],
                actor_id=actor_id,
                related_run_id=run.id,
                notes=f"Run {run.run_number} spare returned",
            )


def _finish_if_done(db: Session, run: ScheduleRun, actor_id: int) -> None:
    if run.status != RunStatus.IN_PROGRESS:
        return
    if not all(is_terminal(STOP_TRANSITIONS, stop.status) for stop in run.stops):
        return
    compare_and_set(
        db,
        ScheduleRun,
        run.id,
        RunStatus.IN_PROGRESS,
        RunStatus.COMPLETED,
        entity="schedule_run",
        completed_at=utcnow(),
    )
    _return_spare(db, run, actor_id)
    db.flush()
    audit.record_transition(
        db, "schedule_run", run.id, run.run_number, RunStatus.IN_PROGRESS, RunStatus.COMPLETED, actor_id
    )
    logger.info("Run %s completed", run.run_number)


def _set_stop(db: Session, stop: ScheduleStop, current: StopStatus, target: StopStatus, **values) -> None:
    compare_and_set(db, ScheduleStop, stop.id, current, target, entity="schedule_stop", **values)


def _run_sizes(db: Session, run: ScheduleRun) -> set[CylinderSize]:
    """Every size a run can append for: its orders plus whatever was loaded."""
    sizes = set(run_requirements(db, run))
    sizes.update(CylinderSize(size) for size in (run.loaded_quantities or {}))
    return sizes


def _stop_ref(run: ScheduleRun, stop: ScheduleStop) -> str:
    return f"{run.run_number}/{stop.sequence}"


def transition_run(
    db: Session,
    run_id: int,
    target: Union[RunStatus, str],
    expected_status: Union[RunStatus, str],
    actor_id: int,
    reason: Optional[str] = None,
) -> ScheduleRun:
    target = RunStatus(target)
    expected = RunStatus(expected_status)
    run = get_run(db, run_id)
    check_expected("schedule_run", run_id, expected, run.status)
    if target == RunStatus.COMPLETED:
        raise InvalidTransition(
            "schedule_run", expected.value, target.value, "a run completes once every stop is finished"
        )
    ensure_transition("schedule_run", RUN_TRANSITIONS, expected, target)

    now = utcnow()
    values: dict = {}
    if target == RunStatus.READY:
        validate_ready(db, run)
    if target == RunStatus.PLANNED and run.loaded_at is not None:
        raise ValidationFailed("a loaded run cannot go back to planned", run_id=run_id)
    if target in RUN_SAFETY_GATED:
        if run.loaded_at is None:
            raise ValidationFailed("complete loading before starting the run", run_id=run_id)
        checklists.ensure_clear(
            db, [(ChecklistEntity.VEHICLE, run.vehicle_id), (ChecklistEntity.DRIVER, run.driver_id)]
        )
        values["started_at"] = now
    if target == RunStatus.CANCELLED:
        values.update(completed_at=now, notes=reason or run.notes)

    if target in (RunStatus.IN_PROGRESS, RunStatus.CANCELLED):
        ledger.reserve_sizes(db, _run_sizes(db, run))
    compare_and_set(db, ScheduleRun, run_id, expected, target, entity="schedule_run", **values)
    audit.record_transition(
        db, "schedule_run", run.id, run.run_number, expected, target, actor_id,
        details={"reason": reason} if reason else None,
    )

    if target == RunStatus.IN_PROGRESS:
        for stop in run.stops:
            order = get_order(db, stop.order_id)
            if order.status == OrderStatus.CANCELLED:
                _set_stop(db, stop, StopStatus.PENDING, StopStatus.SKIPPED, notes="order cancelled")
                continue
            transition_order(
                db,
                order.id,
                OrderStatus.DISPATCHED,
                order.status,
                actor_id,
                vehicle_id=run.vehicle_id,
                driver_id=run.driver_id,
                via_run=True,
            )
        _finish_if_done(db, run, actor_id)
    if target == RunStatus.CANCELLED:
        for stop in run.stops:
            order = get_order(db, stop.order_id)
            if order.status in _ON_THE_ROAD:
                transition_order(
                    db, order.id, OrderStatus.FAILED, order.status, actor_id,
                    reason=reason or "run cancelled", via_run=True,
                )
            else:
                _release_order(db, order, actor_id)
            if not is_terminal(STOP_TRANSITIONS, stop.status):
                _set_stop(db, stop, stop.status, StopStatus.SKIPPED, notes="run cancelled")
        _return_spare(db, run, actor_id)
    db.flush()

    logger.info("Run %s: %s -> %s by actor %s", run.run_number, expected.value, target.value, actor_id)
    return run


def _ensure_running(run: ScheduleRun, stop: ScheduleStop, target: StopStatus) -> None:
    if run.status != RunStatus.IN_PROGRESS:
        raise InvalidTransition(
            "schedule_stop", stop.status.value, target.value, "stops move only while the run is in progress"
        )


def arrive_stop(
    db: Session,
    run_id: int,
    stop_id: int,
    actor_id: int,
    expected_status: Union[StopStatus, str],
) -> ScheduleStop:
    run = get_run(db, run_id)
    stop = get_stop(db, run_id, stop_id)
    check_expected("schedule_stop", stop_id, StopStatus(expected_status), stop.status)
    _ensure_running(run, stop, StopStatus.IN_PROGRESS)
    if stop.status != StopStatus.IN_PROGRESS:
        raise InvalidTransition(
            "schedule_stop", stop.status.value, StopStatus.IN_PROGRESS.value, "start the stop before arriving"
        )
    _set_stop(db, stop, StopStatus.IN_PROGRESS, StopStatus.IN_PROGRESS, actual_arrival=utcnow())
    order = get_order(db, stop.order_id)
    walk_order(db, order, (OrderStatus.IN_TRANSIT, OrderStatus.ARRIVED), actor_id, via_run=True)
    audit.record_transition(
        db, "schedule_stop", stop.id, _stop_ref(run, stop), StopStatus.IN_PROGRESS, StopStatus.IN_PROGRESS,
        actor_id, action="arrived",
    )
    logger.info("Run %s: arrived at stop %d", run.run_number, stop.sequence)
    return stop


def transition_stop(
    db: Session,
    run_id: int,
    stop_id: int,
    target: Union[StopStatus, str],
    actor_id: int,
    expected_status: Union[StopStatus, str],
    deliveries: Optional[list[dict]] = None,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
) -> ScheduleStop:
    """Move a stop and write the outcome back to its order.

    Completing needs per-item ``deliveries``; the order lands in
    ``delivered`` or ``partial_delivery`` accordingly. Skipped and failed
    stops fail the order, which returns its stock.
    """
    target = StopStatus(target)
    run = get_run(db, run_id)
    stop = get_stop(db, run_id, stop_id)
    current = stop.status
    check_expected("schedule_stop", stop_id, StopStatus(expected_status), current)
    ensure_transition("schedule_stop", STOP_TRANSITIONS, current, target)
    _ensure_running(run, stop, target)

    order = get_order(db, stop.order_id)
    now = utcnow()
    values: dict = {"notes": notes or stop.notes}
    outcome = None
    if target == StopStatus.COMPLETED:
        if deliveries is None:
            raise InvalidQuantity("delivered quantities are required to complete a stop")
        outcome = outcome_for(order, deliveries)
        if outcome == OrderStatus.FAILED:
            raise InvalidQuantity("nothing was delivered; fail the stop instead")
        values.update(completed_at=now, actual_arrival=stop.actual_arrival or now)
    if target in (StopStatus.SKIPPED, StopStatus.FAILED):
        values["completed_at"] = now

    if target != StopStatus.IN_PROGRESS:
        ledger.reserve_sizes(db, _run_sizes(db, run))
    _set_stop(db, stop, current, target, **values)
    audit.record_transition(
        db, "schedule_stop", stop.id, _stop_ref(run, stop), current, target, actor_id,
        details={"reason": reason} if reason else None,
    )

    if target == StopStatus.IN_PROGRESS:
        walk_order(db, order, (OrderStatus.IN_TRANSIT,), actor_id, via_run=True)
    elif outcome is not None:
        walk_order(db, order, (OrderStatus.IN_TRANSIT, OrderStatus.ARRIVED), actor_id, via_run=True)
        transition_order(db, order.id, outcome, order.status, actor_id, deliveries=deliveries, via_run=True)
    elif order.status in _ON_THE_ROAD:
        transition_order(
            db, order.id, OrderStatus.FAILED, order.status, actor_id,
            reason=reason or f"stop {target.value}", via_run=True,
        )
    _finish_if_done(db, run, actor_id)
    db.flush()

    logger.info(
        "Run %s stop %d: %s -> %s by actor %s", run.run_number, stop.sequence, current.value, target.value, actor_id
    )
    return stop
