from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import ACTOR, DRIVER, VEHICLE
from depot import audit, checklists, ledger, orders
from depot.db import atomic
from depot.enums import (
    ChecklistEntity,
    CylinderSize,
    CylinderStatus,
    MovementType,
    OrderStatus,
    QuoteStatus,
)
from depot.errors import (
    ChecklistBlocked,
    InvalidMovement,
    InvalidQuantity,
    InvalidTransition,
    QuoteExpired,
    StaleTransition,
    ValidationFailed,
)
from depot.models import CylinderMovement, Quote
from depot.transitions import utcnow

FULL_19 = (CylinderSize.KG19, CylinderStatus.FULL)
ISSUED_19 = (CylinderSize.KG19, CylinderStatus.ISSUED)


def _dispatch(db, order):
    return orders.transition_order(
        db, order.id, OrderStatus.DISPATCHED, OrderStatus.LOADING, ACTOR, vehicle_id=VEHICLE, driver_id=DRIVER
    )


def _walk_to_arrived(db, order):
    return orders.walk_order(db, order, (OrderStatus.IN_TRANSIT, OrderStatus.ARRIVED), ACTOR)


def _movements(db, order_id):
    return db.execute(
        select(CylinderMovement).where(CylinderMovement.related_order_id == order_id).order_by(CylinderMovement.id)
    ).scalars().all()


def _vehicle_template(db):
    return checklists.create_template(
        db,
        code="VEH-PRE",
        name="Vehicle pre-trip",
        entity_type=ChecklistEntity.VEHICLE,
        blocks_on_failure=True,
        items=[{"question": "Brakes working?", "is_critical": True}],
    )


def _check_vehicle(db, template, answer):
    response = checklists.start_response(db, template.id, ChecklistEntity.VEHICLE, VEHICLE, ACTOR)
    checklists.submit_answers(db, response.id, [{"item_id": template.items[0].id, "value": answer}])
    return checklists.complete_response(db, response.id, ACTOR)


def test_order_numbers_are_sequential_per_year(db, make_order) -> None:
    first = make_order()
    second = make_order()
    year = utcnow().year
    assert first.order_number == f"ORD-{year}-00001"
    assert second.order_number == f"ORD-{year}-00002"
    assert first.status == OrderStatus.CREATED


def test_order_needs_positive_item_quantities(db) -> None:
    with pytest.raises(InvalidQuantity):
        orders.create_order(db, 1, 2, [{"product_id": 1, "cylinder_size": "9kg", "quantity": 0}], ACTOR)
    with pytest.raises(ValidationFailed):
        orders.create_order(db, 1, 2, [], ACTOR)


def test_dispatch_issues_stock(db, stock, loading_order) -> None:
    stock(CylinderSize.KG19, 50)
    order = loading_order(4)

    _dispatch(db, order)

    assert order.status == OrderStatus.DISPATCHED
    assert order.stock_issued is True
    assert order.vehicle_id == VEHICLE
    projection = ledger.project_stock(db)
    assert projection[FULL_19] == 46
    assert projection[ISSUED_19] == 4


def test_dispatch_without_enough_full_stock_is_rejected(db, stock, loading_order) -> None:
    stock(CylinderSize.KG19, 2)
    order = loading_order(4)
    with pytest.raises(InvalidMovement) as excinfo:
        _dispatch(db, order)
    assert excinfo.value.details["available"] == 2


def test_cannot_skip_statuses(db, make_order) -> None:
    order = make_order()
    with pytest.raises(InvalidTransition):
        orders.transition_order(db, order.id, OrderStatus.DISPATCHED, OrderStatus.CREATED, ACTOR)


def test_pre_dispatch_rollbacks(db, make_order) -> None:
    order = make_order()
    orders.walk_order(db, order, (OrderStatus.SCHEDULED, OrderStatus.PREPARED), ACTOR)
    orders.walk_order(db, order, (OrderStatus.PREPARED, OrderStatus.SCHEDULED, OrderStatus.CREATED), ACTOR)
    assert order.status == OrderStatus.CREATED


def test_second_transition_with_same_expected_status_is_stale(db, make_order) -> None:
    order = make_order()
    orders.transition_order(db, order.id, OrderStatus.SCHEDULED, OrderStatus.CREATED, ACTOR)
    with pytest.raises(StaleTransition) as excinfo:
        orders.transition_order(db, order.id, OrderStatus.CANCELLED, OrderStatus.CREATED, ACTOR)
    assert excinfo.value.details["actual_status"] == "scheduled"


def test_blocked_vehicle_stops_dispatch_until_a_passing_check(db, stock, loading_order) -> None:
    stock(CylinderSize.KG19, 50)
    template = _vehicle_template(db)
    failed = _check_vehicle(db, template, "no")
    order = loading_order(4)

    with pytest.raises(ChecklistBlocked) as excinfo:
        _dispatch(db, order)

    assert excinfo.value.details["checklist_response_id"] == failed.id
    assert excinfo.value.details["template_code"] == "VEH-PRE"
    assert order.status == OrderStatus.LOADING
    assert ledger.project_stock(db)[FULL_19] == 50

    _check_vehicle(db, template, "yes")
    _dispatch(db, order)
    assert order.status == OrderStatus.DISPATCHED


def test_full_delivery_moves_stock_to_customer_and_collects_empties(db, stock, loading_order) -> None:
    stock(CylinderSize.KG19, 50)
    order = loading_order(4)
    _dispatch(db, order)
    _walk_to_arrived(db, order)
    item = order.items[0]

    orders.transition_order(
        db,
        order.id,
        OrderStatus.DELIVERED,
        OrderStatus.ARRIVED,
        ACTOR,
        deliveries=[{"item_id": item.id, "delivered_quantity": 4, "empties_collected": 3}],
    )

    projection = ledger.project_stock(db)
    assert order.status == OrderStatus.DELIVERED
    assert item.delivered_quantity == 4
    assert item.returned_quantity == 3
    assert projection[ISSUED_19] == 0
    assert projection[(CylinderSize.KG19, CylinderStatus.AT_CUSTOMER)] == 1
    assert projection[(CylinderSize.KG19, CylinderStatus.EMPTY)] == 3
    types = [m.movement_type for m in _movements(db, order.id)]
    assert types == [MovementType.ISSUED_TO_DELIVERY, MovementType.DELIVERED, MovementType.RETURNED_EMPTY]


def test_partial_delivery_returns_the_shortfall(db, stock, loading_order) -> None:
    stock(CylinderSize.KG19, 50)
    order = loading_order(4)
    _dispatch(db, order)
    _walk_to_arrived(db, order)

    orders.transition_order(
        db,
        order.id,
        OrderStatus.PARTIAL_DELIVERY,
        OrderStatus.ARRIVED,
        ACTOR,
        deliveries=[{"item_id": order.items[0].id, "delivered_quantity": 3}],
    )

    projection = ledger.project_stock(db)
    assert projection[FULL_19] == 47
    assert projection[ISSUED_19] == 0
    assert projection[(CylinderSize.KG19, CylinderStatus.AT_CUSTOMER)] == 3


def test_delivered_quantity_cannot_exceed_ordered(db, stock, loading_order) -> None:
    stock(CylinderSize.KG19, 50)
    order = loading_order(4)
    _dispatch(db, order)
    _walk_to_arrived(db, order)
    with pytest.raises(InvalidQuantity):
        orders.transition_order(
            db,
            order.id,
            OrderStatus.DELIVERED,
            OrderStatus.ARRIVED,
            ACTOR,
            deliveries=[{"item_id": order.items[0].id, "delivered_quantity": 5}],
        )


def test_outcome_must_match_delivered_quantities(db, stock, loading_order) -> None:
    stock(CylinderSize.KG19, 50)
    order = loading_order(4)
    _dispatch(db, order)
    _walk_to_arrived(db, order)
    short = [{"item_id": order.items[0].id, "delivered_quantity": 2}]
    with pytest.raises(InvalidQuantity):
        orders.transition_order(db, order.id, OrderStatus.DELIVERED, OrderStatus.ARRIVED, ACTOR, deliveries=short)
    complete = [{"item_id": order.items[0].id, "delivered_quantity": 4}]
    with pytest.raises(InvalidQuantity):
        orders.transition_order(
            db, order.id, OrderStatus.PARTIAL_DELIVERY, OrderStatus.ARRIVED, ACTOR, deliveries=complete
        )


def test_failed_delivery_returns_all_issued_stock(db, stock, loading_order) -> None:
    stock(CylinderSize.KG19, 50)
    order = loading_order(4)
    _dispatch(db, order)
    orders.transition_order(db, order.id, OrderStatus.FAILED, OrderStatus.DISPATCHED, ACTOR, reason="gate locked")

    assert order.failure_reason == "gate locked"
    projection = ledger.project_stock(db)
    assert projection[FULL_19] == 50
    assert projection[ISSUED_19] == 0

    orders.transition_order(db, order.id, OrderStatus.CLOSED, OrderStatus.FAILED, ACTOR)
    assert order.status == OrderStatus.CLOSED


def test_cancelling_a_dispatched_order_returns_its_stock(db, stock, loading_order) -> None:
    stock(CylinderSize.KG19, 50)
    order = loading_order(4)
    _dispatch(db, order)
    orders.transition_order(db, order.id, OrderStatus.CANCELLED, OrderStatus.DISPATCHED, ACTOR)
    assert ledger.project_stock(db)[FULL_19] == 50


def test_cancelled_and_closed_are_terminal(db, make_order) -> None:
    order = make_order()
    orders.transition_order(db, order.id, OrderStatus.CANCELLED, OrderStatus.CREATED, ACTOR)
    with pytest.raises(InvalidTransition):
        orders.transition_order(db, order.id, OrderStatus.SCHEDULED, OrderStatus.CANCELLED, ACTOR)


def test_accessory_items_do_not_touch_the_ledger(db, stock, make_order) -> None:
    stock(CylinderSize.KG9, 10)
    order = make_order(2, CylinderSize.KG9, extra_items=[{"product_id": 9, "quantity": 1}])
    orders.walk_order(
        db,
        order,
        (OrderStatus.SCHEDULED, OrderStatus.PREPARED, OrderStatus.LOADING, OrderStatus.DISPATCHED),
        ACTOR,
    )
    assert ledger.project_stock(db)[(CylinderSize.KG9, CylinderStatus.ISSUED)] == 2


# ---------------------------------------------------------------- quotes


def _quote(db, site_id=200):
    return orders.create_quote(
        db, customer_id=100, items=[{"product_id": 1, "cylinder_size": "48kg", "quantity": 2}], actor_id=ACTOR,
        site_id=site_id,
    )


def test_quote_accept_and_convert_creates_an_order(db) -> None:
    quote = _quote(db)
    assert quote.quote_number == f"QUO-{utcnow().year}-00001"
    orders.transition_quote(db, quote.id, QuoteStatus.SENT, QuoteStatus.DRAFT, ACTOR)
    assert quote.valid_until is not None
    orders.transition_quote(db, quote.id, QuoteStatus.ACCEPTED, QuoteStatus.SENT, ACTOR)

    order = orders.convert_quote(db, quote.id, ACTOR)

    assert quote.status == QuoteStatus.CONVERTED
    assert quote.converted_order_id == order.id
    assert order.quote_id == quote.id
    assert order.items[0].cylinder_size == CylinderSize.KG48
    assert order.items[0].quantity == 2


def test_converting_a_quote_needs_a_site(db) -> None:
    quote = _quote(db, site_id=None)
    orders.transition_quote(db, quote.id, QuoteStatus.SENT, QuoteStatus.DRAFT, ACTOR)
    orders.transition_quote(db, quote.id, QuoteStatus.ACCEPTED, QuoteStatus.SENT, ACTOR)
    with pytest.raises(ValidationFailed):
        orders.convert_quote(db, quote.id, ACTOR)
    order = orders.convert_quote(db, quote.id, ACTOR, site_id=300)
    assert order.site_id == 300


def test_draft_quote_cannot_be_accepted(db) -> None:
    quote = _quote(db)
    with pytest.raises(InvalidTransition):
        orders.transition_quote(db, quote.id, QuoteStatus.ACCEPTED, QuoteStatus.DRAFT, ACTOR)


def test_accepting_an_overdue_quote_is_refused_and_then_expired(db) -> None:
    quote = _quote(db)
    with atomic(db):
        orders.transition_quote(db, quote.id, QuoteStatus.SENT, QuoteStatus.DRAFT, ACTOR)
    later = utcnow() + timedelta(days=8)

    with pytest.raises(QuoteExpired):
        with atomic(db):
            orders.transition_quote(db, quote.id, QuoteStatus.ACCEPTED, QuoteStatus.SENT, ACTOR, now=later)
    assert db.get(Quote, quote.id).status == QuoteStatus.SENT

    with atomic(db):
        orders.expire_quote(db, quote.id, ACTOR, now=later)

    assert db.get(Quote, quote.id).status == QuoteStatus.EXPIRED
    history = audit.entity_history(db, "quote", quote.id)
    assert [event.new_state["status"] for event in history] == ["sent", "expired"]


def test_expiring_a_quote_still_in_date_changes_nothing(db) -> None:
    quote = _quote(db)
    orders.transition_quote(db, quote.id, QuoteStatus.SENT, QuoteStatus.DRAFT, ACTOR)

    orders.expire_quote(db, quote.id, ACTOR)

    assert quote.status == QuoteStatus.SENT


def test_expire_overdue_quotes_sweeps_only_sent_quotes(db) -> None:
    sent = _quote(db)
    draft = _quote(db)
    orders.transition_quote(db, sent.id, QuoteStatus.SENT, QuoteStatus.DRAFT, ACTOR, valid_days=1)

    assert orders.expire_overdue_quotes(db) == 0
    assert orders.expire_overdue_quotes(db, now=utcnow() + timedelta(days=2)) == 1
    assert sent.status == QuoteStatus.EXPIRED
    assert draft.status == QuoteStatus.DRAFT
