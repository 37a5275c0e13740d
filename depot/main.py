from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from depot import audit, checklists, counts, ledger, orders, refill, schedule
from depot.config import settings
from depot.db import SessionLocal, atomic
from depot.enums import (
    ChecklistEntity,
    ChecklistItemType,
    CountStatus,
    CylinderSize,
    CylinderStatus,
    MovementType,
    OrderStatus,
    QuoteStatus,
    RefillStatus,
    RunStatus,
    StopStatus,
)
from depot.errors import DepotError, QuoteExpired
from depot.models import (
    AuditEvent,
    ChecklistResponse,
    ChecklistTemplate,
    CylinderMovement,
    DailyCount,
    Order,
    Quote,
    RefillBatch,
    ScheduleRun,
    ScheduleStop,
)

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="LPG Depot")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


@app.exception_handler(DepotError)
def handle_depot_error(request: Request, exc: DepotError) -> JSONResponse:
    logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder({"detail": exc.to_dict()}))


def _order_out(order: Order) -> dict:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "site_id": order.site_id,
        "quote_id": order.quote_id,
        "status": order.status.value,
        "priority": order.priority,
        "driver_id": order.driver_id,
        "vehicle_id": order.vehicle_id,
        "schedule_run_id": order.schedule_run_id,
        "stock_issued": order.stock_issued,
        "failure_reason": order.failure_reason,
        "items": [
            {
                "item_id": item.id,
                "product_id": item.product_id,
                "cylinder_size": item.cylinder_size.value if item.cylinder_size else None,
                "quantity": item.quantity,
                "delivered_quantity": item.delivered_quantity,
                "returned_quantity": item.returned_quantity,
            }
            for item in order.items
        ],
        "created_at": _iso(order.created_at),
        "dispatched_at": _iso(order.dispatched_at),
        "completed_at": _iso(order.completed_at),
    }


def _quote_out(quote: Quote) -> dict:
    return {
        "quote_id": quote.id,
        "quote_number": quote.quote_number,
        "customer_id": quote.customer_id,
        "site_id": quote.site_id,
        "status": quote.status.value,
        "valid_until": _iso(quote.valid_until),
        "converted_order_id": quote.converted_order_id,
        "items": [
            {
                "product_id": item.product_id,
                "cylinder_size": item.cylinder_size.value if item.cylinder_size else None,
                "quantity": item.quantity,
            }
            for item in quote.items
        ],
    }


def _stop_out(stop: ScheduleStop) -> dict:
    return {
        "stop_id": stop.id,
        "order_id": stop.order_id,
        "sequence": stop.sequence,
        "status": stop.status.value,
        "estimated_arrival": _iso(stop.estimated_arrival),
        "actual_arrival": _iso(stop.actual_arrival),
        "completed_at": _iso(stop.completed_at),
        "notes": stop.notes,
    }


def _run_out(run: ScheduleRun) -> dict:
    return {
        "run_id": run.id,
        "run_number": run.run_number,
        "run_date": run.run_date.isoformat(),
        "vehicle_id": run.vehicle_id,
        "driver_id": run.driver_id,
        "status": run.status.value,
        "loaded_quantities": run.loaded_quantities,
        "loaded_at": _iso(run.loaded_at),
        "started_at": _iso(run.started_at),
        "completed_at": _iso(run.completed_at),
        "stops": [_stop_out(stop) for stop in run.stops],
    }


def _batch_out(batch: RefillBatch) -> dict:
    return {
        "batch_id": batch.id,
        "batch_ref": batch.batch_ref,
        "cylinder_size": batch.cylinder_size.value,
        "status": batch.status.value,
        "planned_count": batch.planned_count,
        "inspected_count": batch.inspected_count,
        "passed_inspection_count": batch.passed_inspection_count,
        "filled_count": batch.filled_count,
        "qc_passed_count": batch.qc_passed_count,
        "actual_filled_count": batch.actual_filled_count,
        "quarantined": batch.quarantined,
        "failure_reason": batch.failure_reason,
        "fill_station_id": batch.fill_station_id,
        "stock_movement_id": batch.stock_movement_id,
        "created_at": _iso(batch.created_at),
        "stocked_at": _iso(batch.stocked_at),
    }


def _movement_out(movement: CylinderMovement) -> dict:
    return {
        "movement_id": movement.id,
        "movement_ref": movement.movement_ref,
        "cylinder_size": movement.cylinder_size.value,
        "movement_type": movement.movement_type.value,
        "quantity": movement.quantity,
        "previous_status": movement.previous_status.value if movement.previous_status else None,
        "new_status": movement.new_status.value if movement.new_status else None,
        "related_order_id": movement.related_order_id,
        "related_batch_id": movement.related_batch_id,
        "related_run_id": movement.related_run_id,
        "related_count_id": movement.related_count_id,
        "actor_id": movement.actor_id,
        "notes": movement.notes,
        "created_at": _iso(movement.created_at),
    }


def _count_out(count: DailyCount) -> dict:
    return {
        "count_id": count.id,
        "count_date": count.count_date.isoformat(),
        "approval_status": count.approval_status.value,
        "counted_by": count.counted_by,
        "reviewed_by": count.reviewed_by,
        "review_notes": count.review_notes,
        "items": [
            {
                "cylinder_size": item.cylinder_size.value,
                "status": item.status.value,
                "physical_quantity": item.physical_quantity,
                "projected_quantity": item.projected_quantity,
                "variance": item.variance,
            }
            for item in count.items
        ],
        "has_variance": any(item.variance for item in count.items),
    }


def _template_out(template: ChecklistTemplate) -> dict:
    return {
        "template_id": template.id,
        "code": template.code,
        "name": template.name,
        "entity_type": template.entity_type.value,
        "blocks_on_failure": template.blocks_on_failure,
        "is_active": template.is_active,
        "items": [
            {
                "item_id": item.id,
                "sequence": item.sequence,
                "question": item.question,
                "item_type": item.item_type.value,
                "is_critical": item.is_critical,
                "is_mandatory": item.is_mandatory,
                "expected_min": item.expected_min,
                "expected_max": item.expected_max,
            }
            for item in template.items
        ],
    }


def _response_out(response: ChecklistResponse) -> dict:
    return {
        "response_id": response.id,
        "response_ref": response.response_ref,
        "template_id": response.template_id,
        "entity_type": response.entity_type.value,
        "entity_id": response.entity_id,
        "status": response.status.value,
        "passed": response.passed,
        "blocked": response.blocked,
        "failed_critical_count": response.failed_critical_count,
        "failed_non_critical_count": response.failed_non_critical_count,
        "answers": [
            {
                "item_id": answer.item_id,
                "value": answer.value,
                "numeric_value": answer.numeric_value,
                "passed": answer.passed,
                "issue_notes": answer.issue_notes,
            }
            for answer in response.answers
        ],
        "started_at": _iso(response.started_at),
        "completed_at": _iso(response.completed_at),
    }


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


# ---------------------------------------------------------------- orders


class LineItem(BaseModel):
    product_id: int
    cylinder_size: Optional[CylinderSize] = None
    quantity: int = Field(gt=0)


class DeliveryLine(BaseModel):
    item_id: int
    delivered_quantity: int = Field(ge=0)
    empties_collected: int = Field(default=0, ge=0)


class OrderCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "customer_id": 12,
                "site_id": 3,
                "actor_id": 7,
                "items": [{"product_id": 1, "cylinder_size": "19kg", "quantity": 4}],
            }
        }
    }
    customer_id: int
    site_id: int
    actor_id: int
    items: list[LineItem]
    priority: int = 0
    notes: Optional[str] = None


class OrderTransition(BaseModel):
    status: OrderStatus
    expected_status: OrderStatus
    actor_id: int
    vehicle_id: Optional[int] = None
    driver_id: Optional[int] = None
    items: Optional[list[DeliveryLine]] = None
    reason: Optional[str] = None


@app.post("/orders", tags=["Orders"])
def create_order(payload: OrderCreate, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        order = orders.create_order(
            db,
            customer_id=payload.customer_id,
            site_id=payload.site_id,
            items=[item.model_dump() for item in payload.items],
            actor_id=payload.actor_id,
            priority=payload.priority,
            notes=payload.notes,
        )
    return {"data": _order_out(order), "meta": _meta()}


@app.get("/orders/{order_id}", tags=["Orders"])
def get_order(order_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _order_out(orders.get_order(db, order_id)), "meta": _meta()}


@app.get("/orders", tags=["Orders"])
def list_orders(
    status: Optional[OrderStatus] = Query(default=None),
    customer_id: Optional[int] = Query(default=None),
    schedule_run_id: Optional[int] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Order)
    if status is not None:
        query = query.filter(Order.status == status)
    if customer_id is not None:
        query = query.filter(Order.customer_id == customer_id)
    if schedule_run_id is not None:
        query = query.filter(Order.schedule_run_id == schedule_run_id)
    rows, next_cursor = _paginate_by_id(query, Order, limit, cursor)
    return {"data": [_order_out(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.post("/orders/{order_id}/transition", tags=["Orders"])
def transition_order(order_id: int, payload: OrderTransition, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        order = orders.transition_order(
            db,
            order_id,
            payload.status,
            payload.expected_status,
            payload.actor_id,
            vehicle_id=payload.vehicle_id,
            driver_id=payload.driver_id,
            deliveries=[line.model_dump() for line in payload.items] if payload.items is not None else None,
            reason=payload.reason,
        )
    return {"data": _order_out(order), "meta": _meta()}


# ---------------------------------------------------------------- quotes


class QuoteCreate(BaseModel):
    customer_id: int
    actor_id: int
    items: list[LineItem]
    site_id: Optional[int] = None
    notes: Optional[str] = None


class QuoteTransition(BaseModel):
    status: QuoteStatus
    expected_status: QuoteStatus
    actor_id: int
    valid_days: Optional[int] = Field(default=None, gt=0)
    site_id: Optional[int] = None


class QuoteConvert(BaseModel):
    actor_id: int
    site_id: Optional[int] = None


@app.post("/quotes", tags=["Quotes"])
def create_quote(payload: QuoteCreate, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        quote = orders.create_quote(
            db,
            customer_id=payload.customer_id,
            items=[item.model_dump() for item in payload.items],
            actor_id=payload.actor_id,
            site_id=payload.site_id,
            notes=payload.notes,
        )
    return {"data": _quote_out(quote), "meta": _meta()}


@app.post("/quotes:expire-overdue", tags=["Quotes"])
def expire_overdue_quotes(db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        expired = orders.expire_overdue_quotes(db)
    return {"data": {"expired": expired}, "meta": _meta()}


@app.get("/quotes/{quote_id}", tags=["Quotes"])
def get_quote(quote_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _quote_out(orders.get_quote(db, quote_id)), "meta": _meta()}


@app.post("/quotes/{quote_id}/transition", tags=["Quotes"])
def transition_quote(quote_id: int, payload: QuoteTransition, db: Session = Depends(get_db)) -> dict:
    try:
        with atomic(db):
            quote = orders.transition_quote(
                db,
                quote_id,
                payload.status,
                payload.expected_status,
                payload.actor_id,
                valid_days=payload.valid_days,
                site_id=payload.site_id,
            )
    except QuoteExpired:
        with atomic(db):
            orders.expire_quote(db, quote_id, payload.actor_id)
        raise
    return {"data": _quote_out(quote), "meta": _meta()}


@app.post("/quotes/{quote_id}/convert", tags=["Quotes"])
def convert_quote(quote_id: int, payload: QuoteConvert, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        order = orders.convert_quote(db, quote_id, payload.actor_id, site_id=payload.site_id)
    return {"data": _order_out(order), "meta": _meta()}


# ---------------------------------------------------------------- schedule


class RunCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"run_date": "2026-10-19", "actor_id": 7, "vehicle_id": 2, "driver_id": 5, "order_ids": [1, 2]}
        }
    }
    run_date: date
    actor_id: int
    vehicle_id: Optional[int] = None
    driver_id: Optional[int] = None
    order_ids: list[int] = Field(default_factory=list)
    notes: Optional[str] = None


class RunTransition(BaseModel):
    status: RunStatus
    expected_status: RunStatus
    actor_id: int
    reason: Optional[str] = None


class LoadingComplete(BaseModel):
    loaded_quantities: dict[CylinderSize, int]
    actor_id: int
    expected_status: RunStatus


class StopCreate(BaseModel):
    order_id: int
    actor_id: int
    sequence: Optional[int] = Field(default=None, ge=1)
    estimated_arrival: Optional[datetime] = None


class StopReorder(BaseModel):
    stop_ids: list[int]
    actor_id: int


class StopTransition(BaseModel):
    status: StopStatus
    actor_id: int
    expected_status: StopStatus
    items: Optional[list[DeliveryLine]] = None
    reason: Optional[str] = None
    notes: Optional[str] = None


class StopArrive(BaseModel):
    actor_id: int
    expected_status: StopStatus


@app.post("/schedule/runs", tags=["Schedule"])
def create_run(payload: RunCreate, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        run = schedule.create_run(
            db,
            run_date=payload.run_date,
            actor_id=payload.actor_id,
            vehicle_id=payload.vehicle_id,
            driver_id=payload.driver_id,
            order_ids=payload.order_ids,
            notes=payload.notes,
        )
    return {"data": _run_out(run), "meta": _meta()}


@app.get("/schedule/runs/{run_id}", tags=["Schedule"])
def get_run(run_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _run_out(schedule.get_run(db, run_id)), "meta": _meta()}


@app.post("/schedule/runs/{run_id}/transition", tags=["Schedule"])
def transition_run(run_id: int, payload: RunTransition, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        run = schedule.transition_run(
            db, run_id, payload.status, payload.expected_status, payload.actor_id, reason=payload.reason
        )
    return {"data": _run_out(run), "meta": _meta()}


@app.post("/schedule/runs/{run_id}/complete-loading", tags=["Schedule"])
def complete_loading(run_id: int, payload: LoadingComplete, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        run = schedule.complete_loading(
            db, run_id, payload.loaded_quantities, payload.actor_id, expected_status=payload.expected_status
        )
    return {"data": _run_out(run), "meta": _meta()}


@app.post("/schedule/runs/{run_id}/stops", tags=["Schedule"])
def add_stop(run_id: int, payload: StopCreate, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        stop = schedule.add_stop(
            db,
            run_id,
            payload.order_id,
            payload.actor_id,
            sequence=payload.sequence,
            estimated_arrival=payload.estimated_arrival,
        )
    return {"data": _stop_out(stop), "meta": _meta()}


@app.delete("/schedule/runs/{run_id}/stops/{stop_id}", tags=["Schedule"])
def remove_stop(run_id: int, stop_id: int, actor_id: int = Query(), db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        run = schedule.remove_stop(db, run_id, stop_id, actor_id)
    return {"data": _run_out(run), "meta": _meta()}


@app.post("/schedule/runs/{run_id}/reorder-stops", tags=["Schedule"])
def reorder_stops(run_id: int, payload: StopReorder, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        run = schedule.reorder_stops(db, run_id, payload.stop_ids, payload.actor_id)
    return {"data": _run_out(run), "meta": _meta()}


@app.post("/schedule/runs/{run_id}/stops/{stop_id}/transition", tags=["Schedule"])
def transition_stop(run_id: int, stop_id: int, payload: StopTransition, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        stop = schedule.transition_stop(
            db,
            run_id,
            stop_id,
            payload.status,
            payload.actor_id,
            expected_status=payload.expected_status,
            deliveries=[line.model_dump() for line in payload.items] if payload.items is not None else None,
            reason=payload.reason,
            notes=payload.notes,
        )
    return {"data": _stop_out(stop), "meta": _meta()}


@app.post("/schedule/runs/{run_id}/stops/{stop_id}/arrive", tags=["Schedule"])
def arrive_stop(run_id: int, stop_id: int, payload: StopArrive, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        stop = schedule.arrive_stop(db, run_id, stop_id, payload.actor_id, expected_status=payload.expected_status)
    return {"data": _stop_out(stop), "meta": _meta()}


# ---------------------------------------------------------------- refill batches


class BatchCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"cylinder_size": "9kg", "planned_count": 100, "actor_id": 7}}}
    cylinder_size: CylinderSize
    planned_count: int = Field(gt=0)
    actor_id: int
    notes: Optional[str] = None


class BatchAction(BaseModel):
    actor_id: int
    expected_status: RefillStatus


class InspectionStart(BatchAction):
    checklist_id: Optional[int] = None


class InspectionComplete(BatchAction):
    passed_inspection_count: int = Field(ge=0)
    inspected_count: Optional[int] = Field(default=None, ge=0)


class FillingStart(BatchAction):
    fill_station_id: Optional[str] = None


class FillingComplete(BatchAction):
    filled_count: int = Field(ge=0)


class QcComplete(BatchAction):
    qc_passed_count: int = Field(ge=0)


class BatchFail(BatchAction):
    reason: str


@app.post("/inventory/refill-batches", tags=["Refill Batches"])
def create_batch(payload: BatchCreate, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        batch = refill.create_batch(db, payload.cylinder_size, payload.planned_count, payload.actor_id, payload.notes)
    return {"data": _batch_out(batch), "meta": _meta()}


@app.get("/inventory/refill-batches/{batch_id}", tags=["Refill Batches"])
def get_batch(batch_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _batch_out(refill.get_batch(db, batch_id)), "meta": _meta()}


@app.get("/inventory/refill-batches", tags=["Refill Batches"])
def list_batches(
    status: Optional[RefillStatus] = Query(default=None),
    cylinder_size: Optional[CylinderSize] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(RefillBatch)
    if status is not None:
        query = query.filter(RefillBatch.status == status)
    if cylinder_size is not None:
        query = query.filter(RefillBatch.cylinder_size == cylinder_size)
    rows, next_cursor = _paginate_by_id(query, RefillBatch, limit, cursor)
    return {"data": [_batch_out(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.post("/inventory/refill-batches/{batch_id}/start-inspection", tags=["Refill Batches"])
def start_inspection(batch_id: int, payload: InspectionStart, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        batch = refill.start_inspection(
            db, batch_id, payload.actor_id, payload.expected_status, checklist_id=payload.checklist_id
        )
    return {"data": _batch_out(batch), "meta": _meta()}


@app.post("/inventory/refill-batches/{batch_id}/complete-inspection", tags=["Refill Batches"])
def complete_inspection(batch_id: int, payload: InspectionComplete, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        batch = refill.complete_inspection(
            db,
            batch_id,
            payload.actor_id,
            payload.expected_status,
            payload.passed_inspection_count,
            inspected_count=payload.inspected_count,
        )
    return {"data": _batch_out(batch), "meta": _meta()}


@app.post("/inventory/refill-batches/{batch_id}/start-filling", tags=["Refill Batches"])
def start_filling(batch_id: int, payload: FillingStart, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        batch = refill.start_filling(
            db, batch_id, payload.actor_id, payload.expected_status, fill_station_id=payload.fill_station_id
        )
    return {"data": _batch_out(batch), "meta": _meta()}


@app.post("/inventory/refill-batches/{batch_id}/complete-filling", tags=["Refill Batches"])
def complete_filling(batch_id: int, payload: FillingComplete, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        batch = refill.complete_filling(
            db, batch_id, payload.actor_id, payload.expected_status, payload.filled_count
        )
    return {"data": _batch_out(batch), "meta": _meta()}


@app.post("/inventory/refill-batches/{batch_id}/complete-qc", tags=["Refill Batches"])
def complete_qc(batch_id: int, payload: QcComplete, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        batch = refill.complete_qc(
            db, batch_id, payload.actor_id, payload.expected_status, payload.qc_passed_count
        )
    return {"data": _batch_out(batch), "meta": _meta()}


@app.post("/inventory/refill-batches/{batch_id}/stock", tags=["Refill Batches"])
def stock_batch(batch_id: int, payload: BatchAction, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        batch = refill.stock_batch(db, batch_id, payload.actor_id, payload.expected_status)
    return {"data": _batch_out(batch), "meta": _meta()}


@app.post("/inventory/refill-batches/{batch_id}/fail", tags=["Refill Batches"])
def fail_batch(batch_id: int, payload: BatchFail, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        batch = refill.fail_batch(
            db, batch_id, payload.actor_id, payload.expected_status, payload.reason
        )
    return {"data": _batch_out(batch), "meta": _meta()}


# ---------------------------------------------------------------- cylinder ledger


class MovementCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"cylinder_size": "19kg", "movement_type": "received", "quantity": 40, "actor_id": 7}
        }
    }
    cylinder_size: CylinderSize
    movement_type: MovementType
    quantity: int = Field(gt=0)
    actor_id: int
    previous_status: Optional[CylinderStatus] = None
    new_status: Optional[CylinderStatus] = None
    related_order_id: Optional[int] = None
    related_batch_id: Optional[int] = None
    related_run_id: Optional[int] = None
    notes: Optional[str] = None


@app.post("/inventory/cylinders/movements", tags=["Cylinder Ledger"])
def create_movement(payload: MovementCreate, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        movement = ledger.append_movement(db, **payload.model_dump())
    warnings = [
        f"{alert['cylinder_size']} full stock is {alert['quantity']}, below {alert['threshold']}"
        for alert in ledger.low_stock_alerts(db)
        if alert["cylinder_size"] == payload.cylinder_size.value
    ]
    return {"data": _movement_out(movement), "meta": _meta(warnings=warnings)}


@app.get("/inventory/cylinders/movements", tags=["Cylinder Ledger"])
def list_movements(
    cylinder_size: Optional[CylinderSize] = Query(default=None),
    movement_type: Optional[MovementType] = Query(default=None),
    related_order_id: Optional[int] = Query(default=None),
    related_batch_id: Optional[int] = Query(default=None),
    related_run_id: Optional[int] = Query(default=None),
    related_count_id: Optional[int] = Query(default=None),
    created_from: Optional[datetime] = Query(default=None),
    created_to: Optional[datetime] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(CylinderMovement)
    if cylinder_size is not None:
        query = query.filter(CylinderMovement.cylinder_size == cylinder_size)
    if movement_type is not None:
        query = query.filter(CylinderMovement.movement_type == movement_type)
    if related_order_id is not None:
        query = query.filter(CylinderMovement.related_order_id == related_order_id)
    if related_batch_id is not None:
        query = query.filter(CylinderMovement.related_batch_id == related_batch_id)
    if related_run_id is not None:
        query = query.filter(CylinderMovement.related_run_id == related_run_id)
    if related_count_id is not None:
        query = query.filter(CylinderMovement.related_count_id == related_count_id)
    if created_from is not None:
        query = query.filter(CylinderMovement.created_at >= created_from)
    if created_to is not None:
        query = query.filter(CylinderMovement.created_at <= created_to)
    rows, next_cursor = _paginate_by_id(query, CylinderMovement, limit, cursor)
    return {"data": [_movement_out(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/inventory/cylinders/stock", tags=["Cylinder Ledger"])
def get_stock(as_of: Optional[datetime] = Query(default=None), db: Session = Depends(get_db)) -> dict:
    summary = ledger.stock_summary(ledger.project_stock(db, as_of=as_of))
    summary["as_of"] = _iso(as_of)
    return {"data": summary, "meta": _meta()}


@app.get("/inventory/cylinders/stock/status/{status}", tags=["Cylinder Ledger"])
def get_stock_by_status(status: CylinderStatus, db: Session = Depends(get_db)) -> dict:
    projection = ledger.project_stock(db)
    data = {size.value: projection[(size, status)] for size in CylinderSize}
    return {"data": {"status": status.value, "by_size": data, "total": sum(data.values())}, "meta": _meta()}


@app.get("/inventory/cylinders/stock/{cylinder_size}", tags=["Cylinder Ledger"])
def get_stock_by_size(cylinder_size: CylinderSize, db: Session = Depends(get_db)) -> dict:
    projection = ledger.project_stock(db)
    data = {status.value: projection[(cylinder_size, status)] for status in CylinderStatus}
    return {
        "data": {"cylinder_size": cylinder_size.value, "by_status": data, "total": sum(data.values())},
        "meta": _meta(),
    }


@app.get("/inventory/cylinders/alerts", tags=["Cylinder Ledger"])
def get_alerts(threshold: Optional[int] = Query(default=None, ge=0), db: Session = Depends(get_db)) -> dict:
    return {"data": ledger.low_stock_alerts(db, threshold), "meta": _meta()}


# ---------------------------------------------------------------- daily counts


class CountLine(BaseModel):
    cylinder_size: CylinderSize
    status: CylinderStatus
    physical_quantity: int = Field(ge=0)


class CountCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "count_date": "2026-10-19",
                "actor_id": 7,
                "items": [{"cylinder_size": "9kg", "status": "full", "physical_quantity": 48}],
            }
        }
    }
    count_date: date
    actor_id: int
    items: list[CountLine]
    notes: Optional[str] = None


class CountReview(BaseModel):
    expected_status: CountStatus
    actor_id: int
    approved: bool = True
    notes: Optional[str] = None


@app.post("/inventory/daily-counts", tags=["Daily Counts"])
def submit_count(payload: CountCreate, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        count = counts.submit_count(
            db, payload.count_date, [line.model_dump() for line in payload.items], payload.actor_id, payload.notes
        )
    return {"data": _count_out(count), "meta": _meta()}


@app.get("/inventory/daily-counts", tags=["Daily Counts"])
def list_counts(
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    has_variance: Optional[bool] = Query(default=None),
    status: Optional[CountStatus] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    rows = counts.list_counts(db, date_from, date_to, has_variance, status)
    return {"data": [_count_out(row) for row in rows], "meta": _meta()}


@app.get("/inventory/daily-counts/{count_id}", tags=["Daily Counts"])
def get_count(count_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _count_out(counts.get_count(db, count_id)), "meta": _meta()}


@app.post("/inventory/daily-counts/{count_id}/approve", tags=["Daily Counts"])
def review_count(count_id: int, payload: CountReview, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        count = counts.review_count(
            db, count_id, payload.approved, payload.actor_id, payload.expected_status, notes=payload.notes
        )
    return {"data": _count_out(count), "meta": _meta()}


# ---------------------------------------------------------------- checklists


class TemplateItemCreate(BaseModel):
    question: str
    item_type: ChecklistItemType = ChecklistItemType.YES_NO
    is_critical: bool = False
    is_mandatory: bool = True
    expected_min: Optional[float] = None
    expected_max: Optional[float] = None


class TemplateCreate(BaseModel):
    code: str
    name: str
    entity_type: ChecklistEntity
    blocks_on_failure: bool = False
    items: list[TemplateItemCreate]


class AnswerIn(BaseModel):
    item_id: int
    value: Optional[str] = None
    numeric_value: Optional[float] = None
    issue_notes: Optional[str] = None


class ResponseStart(BaseModel):
    template_id: int
    entity_type: ChecklistEntity
    entity_id: int
    actor_id: int
    answers: list[AnswerIn] = Field(default_factory=list)


class ResponseUpdate(BaseModel):
    actor_id: int
    answers: list[AnswerIn] = Field(default_factory=list)
    action: Optional[Literal["complete", "cancel"]] = None
    notes: Optional[str] = None


@app.post("/checklists/templates", tags=["Checklists"])
def create_template(payload: TemplateCreate, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        template = checklists.create_template(
            db,
            payload.code,
            payload.name,
            payload.entity_type,
            [item.model_dump() for item in payload.items],
            blocks_on_failure=payload.blocks_on_failure,
        )
    return {"data": _template_out(template), "meta": _meta()}


@app.post("/checklists/responses", tags=["Checklists"])
def start_response(payload: ResponseStart, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        response = checklists.start_response(
            db, payload.template_id, payload.entity_type, payload.entity_id, payload.actor_id
        )
        if payload.answers:
            checklists.submit_answers(db, response.id, [answer.model_dump() for answer in payload.answers])
    return {"data": _response_out(response), "meta": _meta()}


@app.get("/checklists/responses/{response_id}", tags=["Checklists"])
def get_response(response_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _response_out(checklists.get_response(db, response_id)), "meta": _meta()}


@app.patch("/checklists/responses/{response_id}", tags=["Checklists"])
def update_response(response_id: int, payload: ResponseUpdate, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        response = checklists.get_response(db, response_id)
        if payload.answers:
            response = checklists.submit_answers(db, response_id, [answer.model_dump() for answer in payload.answers])
        if payload.action == "complete":
            response = checklists.complete_response(db, response_id, payload.actor_id, payload.notes)
        elif payload.action == "cancel":
            response = checklists.cancel_response(db, response_id, payload.actor_id, payload.notes)
    return {"data": _response_out(response), "meta": _meta()}


@app.get("/checklists/gate/{entity_type}/{entity_id}", tags=["Checklists"])
def get_gate(entity_type: ChecklistEntity, entity_id: int, db: Session = Depends(get_db)) -> dict:
    decision = checklists.evaluate_gate(db, entity_type, entity_id)
    return {"data": decision.to_dict(), "meta": _meta()}


# ---------------------------------------------------------------- audit trail


def _audit_out(event: AuditEvent) -> dict:
    return {
        "event_id": event.id,
        "event_type": event.event_type,
        "action": event.action,
        "entity_type": event.entity_type,
        "entity_id": event.entity_id,
        "entity_ref": event.entity_ref,
        "actor_id": event.actor_id,
        "summary": event.summary,
        "previous_state": event.previous_state,
        "new_state": event.new_state,
        "details": event.details,
        "occurred_at": _iso(event.occurred_at),
    }


@app.get("/audit/events", tags=["Audit"])
def list_audit_events(
    event_type: Optional[str] = Query(default=None),
    entity_type: Optional[str] = Query(default=None),
    entity_id: Optional[int] = Query(default=None),
    actor_id: Optional[int] = Query(default=None),
    occurred_from: Optional[datetime] = Query(default=None),
    occurred_to: Optional[datetime] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = audit.events_query(
        db,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
    )
    rows, next_cursor = _paginate_by_id(query, AuditEvent, limit, cursor)
    return {"data": [_audit_out(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/audit/entities/{entity_type}/{entity_id}", tags=["Audit"])
def get_entity_history(entity_type: str, entity_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": [_audit_out(row) for row in audit.entity_history(db, entity_type, entity_id)], "meta": _meta()}
