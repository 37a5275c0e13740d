"""Quote and order state machines.

An order moves stock twice: entering ``dispatched`` issues full cylinders
(unless its run already loaded them) and the delivery outcome settles what
was issued: delivered units go to the customer, undelivered units come back
full, collected empties come back empty.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from depot import audit, checklists, ledger
from depot.config import settings
from depot.enums import ChecklistEntity, CylinderSize, MovementType, OrderStatus, QuoteStatus
from depot.errors import InvalidQuantity, InvalidTransition, NotFound, QuoteExpired, ValidationFailed
from depot.models import Order, OrderItem, Quote, QuoteItem
from depot.numbering import next_reference, year_prefix
from depot.transitions import (
    ORDER_SAFETY_GATED,
    ORDER_TRANSITIONS,
    QUOTE_TRANSITIONS,
    check_expected,
    compare_and_set,
    ensure_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

# Statuses in which issued stock is still on the vehicle.
_STOCK_OUT = frozenset({OrderStatus.DISPATCHED, OrderStatus.IN_TRANSIT, OrderStatus.ARRIVED})

# Statuses that an order on a run only reaches through its stop.
_RUN_DRIVEN = frozenset({
    OrderStatus.DISPATCHED,
    OrderStatus.IN_TRANSIT,
    OrderStatus.ARRIVED,
    OrderStatus.DELIVERED,
    OrderStatus.PARTIAL_DELIVERY,
    OrderStatus.FAILED,
})

# Transitions that may append ledger entries.
_STOCK_TARGETS = frozenset({
    OrderStatus.DISPATCHED,
    OrderStatus.DELIVERED,
    OrderStatus.PARTIAL_DELIVERY,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
})


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _normalize_items(items: Iterable[dict]) -> list[dict]:
    normalized = []
    for item in items:
        quantity = item.get("quantity")
        if not isinstance(quantity, int) or quantity <= 0:
            raise InvalidQuantity("item quantity must be a positive integer", product_id=item.get("product_id"))
        size = item.get("cylinder_size")
        normalized.append(
            {
                "product_id": item["product_id"],
                "cylinder_size": CylinderSize(size) if size is not None else None,
                "quantity": quantity,
            }
        )
    if not normalized:
        raise ValidationFailed("at least one item is required")
    return normalized


# ---------------------------------------------------------------- quotes


def get_quote(db: Session, quote_id: int) -> Quote:
    quote = db.get(Quote, quote_id)
    if quote is None:
        raise NotFound("quote not found", quote_id=quote_id)
    return quote


def create_quote(
    db: Session,
    customer_id: int,
    items: Iterable[dict],
    actor_id: int,
    site_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> Quote:
    now = utcnow()
    quote = Quote(
        quote_number=next_reference(db, Quote.quote_number, year_prefix("QUO", now), 5),
        customer_id=customer_id,
        site_id=site_id,
        status=QuoteStatus.DRAFT,
        notes=notes,
        created_by=actor_id,
        created_at=now,
        updated_at=now,
    )
    for item in _normalize_items(items):
        quote.items.append(QuoteItem(**item))
    db.add(quote)
    db.flush()
    logger.info("Quote %s created for customer %s", quote.quote_number, customer_id)
    return quote


def transition_quote(
    db: Session,
    quote_id: int,
    target: Union[QuoteStatus, str],
    expected_status: Union[QuoteStatus, str],
    actor_id: int,
    valid_days: Optional[int] = None,
    site_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Quote:
    """Move a quote; converting creates the order.

    Accepting an overdue quote raises ``QuoteExpired`` without writing
    anything. The caller rolls back its unit and records the expiry with
    ``expire_quote`` in a unit of its own.
    """
    target = QuoteStatus(target)
    expected = QuoteStatus(expected_status)
    quote = get_quote(db, quote_id)
    check_expected("quote", quote_id, expected, quote.status)
    ensure_transition("quote", QUOTE_TRANSITIONS, expected, target)
    if target == QuoteStatus.CONVERTED:
        convert_quote(db, quote_id, actor_id, site_id=site_id)
        return quote

    now = now or utcnow()
    values: dict = {"updated_at": now}
    if target == QuoteStatus.SENT:
        values["valid_until"] = now + timedelta(days=valid_days or settings.quote_valid_days)
    if target == QuoteStatus.ACCEPTED and quote.valid_until and _as_utc(quote.valid_until) < now:
        raise QuoteExpired(f"quote {quote.quote_number} has expired", quote_id=quote_id)

    compare_and_set(db, Quote, quote_id, expected, target, entity="quote", **values)
    audit.record_transition(db, "quote", quote.id, quote.quote_number, expected, target, actor_id)
    logger.info("Quote %s: %s -> %s by actor %s", quote.quote_number, expected.value, target.value, actor_id)
    return quote


def expire_quote(db: Session, quote_id: int, actor_id: int, now: Optional[datetime] = None) -> Quote:
    """Expire a sent quote whose validity has lapsed."""
    now = now or utcnow()
    quote = get_quote(db, quote_id)
    if quote.status != QuoteStatus.SENT or quote.valid_until is None or _as_utc(quote.valid_until) >= now:
        return quote
    compare_and_set(db, Quote, quote_id, QuoteStatus.SENT, QuoteStatus.EXPIRED, entity="quote", updated_at=now)
    audit.record_transition(
        db, "quote", quote.id, quote.quote_number, QuoteStatus.SENT, QuoteStatus.EXPIRED, actor_id
    )
    logger.warning("Quote %s expired before acceptance", quote.quote_number)
    return quote


def convert_quote(db: Session, quote_id: int, actor_id: int, site_id: Optional[int] = None) -> Order:
    quote = get_quote(db, quote_id)
    ensure_transition("quote", QUOTE_TRANSITIONS, quote.status, QuoteStatus.CONVERTED)
    site = site_id or quote.site_id
    if site is None:
        raise ValidationFailed("quote needs a delivery site before conversion", quote_id=quote_id)
    order = create_order(
        db,
        customer_id=quote.customer_id,
        site_id=site,
        items=[
            {"product_id": item.product_id, "cylinder_size": item.cylinder_size, "quantity": item.quantity}
            for item in quote.items
        ],
        actor_id=actor_id,
        quote_id=quote.id,
    )
    compare_and_set(
        db,
        Quote,
        quote.id,
        QuoteStatus.ACCEPTED,
        QuoteStatus.CONVERTED,
        entity="quote",
        converted_order_id=order.id,
        updated_at=utcnow(),
    )
    audit.record_transition(
        db, "quote", quote.id, quote.quote_number, QuoteStatus.ACCEPTED, QuoteStatus.CONVERTED, actor_id,
        details={"order_id": order.id},
    )
    logger.info("Quote %s converted to order %s", quote.quote_number, order.order_number)
    return order


def expire_overdue_quotes(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    overdue = db.execute(
        select(Quote).where(Quote.status == QuoteStatus.SENT, Quote.valid_until < now)
    ).scalars().all()
    for quote in overdue:
        compare_and_set(db, Quote, quote.id, QuoteStatus.SENT, QuoteStatus.EXPIRED, entity="quote", updated_at=now)
    if overdue:
        logger.info("Expired %d overdue quotes", len(overdue))
    return len(overdue)


# ---------------------------------------------------------------- orders


def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound("order not found", order_id=order_id)
    return order


def create_order(
    db: Session,
    customer_id: int,
    site_id: int,
    items: Iterable[dict],
    actor_id: int,
    priority: int = 0,
    quote_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> Order:
    now = utcnow()
    order = Order(
        order_number=next_reference(db, Order.order_number, year_prefix("ORD", now), 5),
        customer_id=customer_id,
        site_id=site_id,
        quote_id=quote_id,
        status=OrderStatus.CREATED,
        priority=priority,
        stock_issued=False,
        notes=notes,
        created_by=actor_id,
        created_at=now,
        updated_at=now,
    )
    for item in _normalize_items(items):
        order.items.append(OrderItem(**item))
    db.add(order)
    db.flush()
    logger.info("Order %s created for customer %s", order.order_number, customer_id)
    return order


def cylinder_quantities(items: Iterable[OrderItem], field: str = "quantity") -> dict[CylinderSize, int]:
    totals: dict[CylinderSize, int] = defaultdict(int)
    for item in items:
        if item.cylinder_size is not None:
            totals[item.cylinder_size] += getattr(item, field) or 0
    return dict(totals)


def _append_per_size(
    db: Session, order: Order, movement_type: MovementType, quantities: dict[CylinderSize, int], actor_id: int
) -> None:
    for size in sorted(quantities, key=lambda s: s.value):
        if quantities[size] > 0:
            ledger.append_movement(
                db,
                cylinder_size=size,
                movement_type=movement_type,
                quantity=quantities[size],
                actor_id=actor_id,
                related_order_id=order.id,
                related_run_id=order.schedule_run_id,
                notes=f"Order {order.order_number}",
            )


def _apply_deliveries(order: Order, deliveries: Optional[Iterable[dict]], target: OrderStatus) -> None:
    if deliveries is None:
        raise InvalidQuantity("delivered quantities are required for this transition")
    by_item = {item.id: item for item in order.items}
    supplied: dict[int, dict] = {}
    for entry in deliveries:
        item = by_item.get(entry.get("item_id"))
        if item is None:
            raise ValidationFailed("delivery references an item outside this order", item_id=entry.get("item_id"))
        supplied[item.id] = entry
    missing = [item_id for item_id in by_item if item_id not in supplied]
    if missing:
        raise InvalidQuantity("a delivered quantity is required for every item", missing_items=missing)

    for item_id, entry in supplied.items():
        item = by_item[item_id]
        delivered = entry.get("delivered_quantity")
        empties = entry.get("empties_collected") or 0
        if not isinstance(delivered, int) or delivered < 0 or delivered > item.quantity:
            raise InvalidQuantity(
                f"delivered quantity must be between 0 and {item.quantity}",
                item_id=item_id,
                delivered_quantity=delivered,
                quantity=item.quantity,
            )
        if not isinstance(empties, int) or empties < 0:
            raise InvalidQuantity("empties collected cannot be negative", item_id=item_id)

    complete = all(supplied[i.id]["delivered_quantity"] == i.quantity for i in order.items)
    total = sum(supplied[i.id]["delivered_quantity"] for i in order.items)
    if target == OrderStatus.DELIVERED and not complete:
        raise InvalidQuantity("every item must be delivered in full to mark the order delivered")
    if target == OrderStatus.PARTIAL_DELIVERY and (complete or total == 0):
        raise InvalidQuantity("a partial delivery needs at least one short item and a non-zero total")

    for item in order.items:
        item.delivered_quantity = supplied[item.id]["delivered_quantity"]
        item.returned_quantity = supplied[item.id].get("empties_collected") or 0


def outcome_for(order: Order, deliveries: Iterable[dict]) -> OrderStatus:
    """The delivery status implied by per-item delivered quantities."""
    delivered = {entry.get("item_id"): entry.get("delivered_quantity") or 0 for entry in deliveries}
    if all(delivered.get(item.id, 0) >= item.quantity for item in order.items):
        return OrderStatus.DELIVERED
    if sum(delivered.values()) > 0:
        return OrderStatus.PARTIAL_DELIVERY
    return OrderStatus.FAILED


def transition_order(
    db: Session,
    order_id: int,
    target: Union[OrderStatus, str],
    expected_status: Union[OrderStatus, str],
    actor_id: int,
    *,
    vehicle_id: Optional[int] = None,
    driver_id: Optional[int] = None,
    deliveries: Optional[list[dict]] = None,
    reason: Optional[str] = None,
    via_run: bool = False,
) -> Order:
    """Move an order one step.

    An order bound to a schedule run is dispatched, delivered or failed by
    its run and stop only; those services pass ``via_run=True``.
    """
    target = OrderStatus(target)
    expected = OrderStatus(expected_status)
    order = get_order(db, order_id)
    check_expected("order", order_id, expected, order.status)
    ensure_transition("order", ORDER_TRANSITIONS, expected, target)
    if order.schedule_run_id is not None and target in _RUN_DRIVEN and not via_run:
        raise InvalidTransition(
            "order", expected.value, target.value,
            f"order {order.order_number} is on run {order.schedule_run_id}; move it through its stop",
        )

    now = utcnow()
    values: dict = {"updated_at": now}
    if target == OrderStatus.CREATED:
        values.update(schedule_run_id=None)
    if target == OrderStatus.DISPATCHED:
        values.update(
            vehicle_id=vehicle_id or order.vehicle_id,
            driver_id=driver_id or order.driver_id,
            dispatched_at=now,
        )
    if target in ORDER_SAFETY_GATED:
        checklists.ensure_clear(
            db,
            [
                (ChecklistEntity.VEHICLE, vehicle_id or order.vehicle_id),
                (ChecklistEntity.DRIVER, driver_id or order.driver_id),
                (ChecklistEntity.ORDER, order.id),
            ],
        )
    if target in (OrderStatus.DELIVERED, OrderStatus.PARTIAL_DELIVERY):
        _apply_deliveries(order, deliveries, target)
        values["completed_at"] = now
    if target == OrderStatus.FAILED:
        values.update(failure_reason=reason, completed_at=now)
    if target == OrderStatus.CANCELLED:
        values.update(failure_reason=reason)

    sizes = cylinder_quantities(order.items)
    if sizes and target in _STOCK_TARGETS:
        ledger.reserve_sizes(db, sizes)
    compare_and_set(db, Order, order_id, expected, target, entity="order", **values)

    if target == OrderStatus.DISPATCHED and not order.stock_issued:
        _append_per_size(db, order, MovementType.ISSUED_TO_DELIVERY, sizes, actor_id)
        order.stock_issued = True
    if order.stock_issued and target in (OrderStatus.DELIVERED, OrderStatus.PARTIAL_DELIVERY):
        delivered = cylinder_quantities(order.items, "delivered_quantity")
        _append_per_size(db, order, MovementType.DELIVERED, delivered, actor_id)
        _append_per_size(
            db, order, MovementType.RETURNED_FULL,
            {size: sizes[size] - delivered.get(size, 0) for size in sizes},
            actor_id,
        )
        _append_per_size(db, order, MovementType.RETURNED_EMPTY, cylinder_quantities(order.items, "returned_quantity"), actor_id)
    if order.stock_issued and target == OrderStatus.FAILED:
        for item in order.items:
            item.delivered_quantity = 0
        _append_per_size(db, order, MovementType.RETURNED_FULL, sizes, actor_id)
    if order.stock_issued and target == OrderStatus.CANCELLED and expected in _STOCK_OUT:
        _append_per_size(db, order, MovementType.RETURNED_FULL, sizes, actor_id)
    if order.stock_issued and expected == OrderStatus.LOADING and target != OrderStatus.DISPATCHED:
        # Loaded stock stays on the run and returns with its spare.
        order.stock_issued = False
    db.flush()
    audit.record_transition(
        db, "order", order.id, order.order_number, expected, target, actor_id,
        details={"reason": reason} if reason else None,
    )

    logger.info("Order %s: %s -> %s by actor %s", order.order_number, expected.value, target.value, actor_id)
    return order


def walk_order(
    db: Session, order: Order, path: Iterable[OrderStatus], actor_id: int, **kwargs
) -> Order:
    """Apply consecutive transitions, skipping steps the order has already passed."""
    steps = list(path)
    if order.status in steps:
        steps = steps[steps.index(order.status) + 1:]
    for step in steps:
        transition_order(db, order.id, step, order.status, actor_id, **kwargs)
    return order
