import threading

import pytest
from sqlalchemy.orm import sessionmaker

from conftest import ACTOR
from depot import ledger, orders
from depot.db import atomic
from depot.enums import CylinderSize, CylinderStatus, MovementType, OrderStatus
from depot.errors import InvalidMovement, LedgerBusy, StaleTransition
from depot.models import Order


@pytest.fixture
def sessions(file_engine):
    factory = sessionmaker(bind=file_engine, autoflush=False, autocommit=False)
    first, second = factory(), factory()
    try:
        yield first, second
    finally:
        first.close()
        second.close()


def test_second_caller_citing_the_same_status_gets_stale_transition(sessions) -> None:
    first, second = sessions
    with atomic(first):
        order = orders.create_order(
            first, 1, 2, [{"product_id": 1, "cylinder_size": "9kg", "quantity": 1}], ACTOR
        )
    order_id = order.id
    reader = second.get(Order, order_id)
    assert reader.status == OrderStatus.CREATED

    with atomic(first):
        orders.transition_order(first, order_id, OrderStatus.SCHEDULED, OrderStatus.CREATED, ACTOR)

    # second still holds the row as created
    with pytest.raises(StaleTransition):
        with atomic(second):
            orders.transition_order(second, order_id, OrderStatus.CANCELLED, OrderStatus.CREATED, ACTOR)


def test_failed_append_leaves_no_partial_rows(sessions) -> None:
    first, second = sessions
    with atomic(first):
        ledger.append_movement(
            first, cylinder_size="19kg", movement_type=MovementType.INITIAL_STOCK, quantity=50, actor_id=ACTOR
        )

    with pytest.raises(InvalidMovement):
        with atomic(second):
            ledger.append_movement(
                second, cylinder_size="19kg", movement_type=MovementType.RECEIVED, quantity=5, actor_id=ACTOR
            )
            ledger.append_movement(
                second,
                cylinder_size="19kg",
                movement_type=MovementType.ISSUED_TO_DELIVERY,
                quantity=60,
                actor_id=ACTOR,
            )

    projection = ledger.project_stock(first)
    assert projection[(CylinderSize.KG19, CylinderStatus.FULL)] == 50
    assert projection[(CylinderSize.KG19, CylinderStatus.EMPTY)] == 0
    assert ledger.fold_ledger(first) == projection
    assert ledger._HELD_LOCKS not in second.info


def _run_in_threads(*targets):
    errors: list[Exception] = []

    def wrap(target):
        def run():
            try:
                target()
            except Exception as exc:
                errors.append(exc)

        return run

    threads = [threading.Thread(target=wrap(target)) for target in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    assert not any(thread.is_alive() for thread in threads)
    return errors


def test_opposite_size_orders_cannot_deadlock(file_engine) -> None:
    factory = sessionmaker(bind=file_engine, autoflush=False, autocommit=False)
    both_hold_one = threading.Barrier(2, timeout=5)
    finished: list[str] = []

    def nine_then_fourteen():
        session = factory()
        try:
            with atomic(session):
                ledger.reserve_sizes(session, [CylinderSize.KG9])
                both_hold_one.wait()
                ledger.reserve_sizes(session, [CylinderSize.KG14])
                finished.append("9kg-first")
        finally:
            session.close()

    def fourteen_then_nine():
        session = factory()
        try:
            with atomic(session):
                ledger.reserve_sizes(session, [CylinderSize.KG14])
                both_hold_one.wait()
                ledger.reserve_sizes(session, [CylinderSize.KG9])
                finished.append("14kg-first")
        finally:
            session.close()

    errors = _run_in_threads(nine_then_fourteen, fourteen_then_nine)

    assert finished == ["9kg-first"]
    assert len(errors) == 1
    assert isinstance(errors[0], LedgerBusy)
    assert errors[0].details["cylinder_size"] == "9kg"


def test_appends_on_different_sizes_proceed_side_by_side(file_engine) -> None:
    factory = sessionmaker(bind=file_engine, autoflush=False, autocommit=False)
    both_hold_one = threading.Barrier(2, timeout=5)

    def seed(size, quantity):
        def run():
            session = factory()
            try:
                with atomic(session):
                    ledger.reserve_sizes(session, [size])
                    both_hold_one.wait()
                    ledger.append_movement(
                        session,
                        cylinder_size=size,
                        movement_type=MovementType.INITIAL_STOCK,
                        quantity=quantity,
                        actor_id=ACTOR,
                    )
            finally:
                session.close()

        return run

    errors = _run_in_threads(seed(CylinderSize.KG9, 12), seed(CylinderSize.KG14, 7))

    assert errors == []
    reader = factory()
    try:
        projection = ledger.project_stock(reader)
        assert projection[(CylinderSize.KG9, CylinderStatus.FULL)] == 12
        assert projection[(CylinderSize.KG14, CylinderStatus.FULL)] == 7
        assert ledger.fold_ledger(reader) == projection
    finally:
        reader.close()


def test_reserving_a_later_size_waits_for_its_holder(file_engine) -> None:
    factory = sessionmaker(bind=file_engine, autoflush=False, autocommit=False)
    holding = threading.Event()
    release = threading.Event()
    order: list[str] = []

    def holder():
        session = factory()
        try:
            with atomic(session):
                ledger.reserve_sizes(session, [CylinderSize.KG19])
                holding.set()
                release.wait(timeout=5)
                order.append("holder done")
        finally:
            session.close()

    def waiter():
        holding.wait(timeout=5)
        session = factory()
        try:
            with atomic(session):
                release.set()
                ledger.reserve_sizes(session, [CylinderSize.KG9, CylinderSize.KG19])
                order.append("waiter done")
        finally:
            session.close()

    errors = _run_in_threads(holder, waiter)

    assert errors == []
    assert order == ["holder done", "waiter done"]
