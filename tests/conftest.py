import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from depot import ledger, models  # noqa: F401
from depot.db import Base
from depot.enums import CylinderSize, CylinderStatus, MovementType, OrderStatus
from depot.orders import create_order, walk_order

ACTOR = 7
REVIEWER = 8
VEHICLE = 31
DRIVER = 41


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def file_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'depot.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def stock(db):
    """Seed stock into one bucket with an ``initial_stock`` entry."""

    def _stock(size: CylinderSize, quantity: int, status: CylinderStatus = CylinderStatus.FULL):
        return ledger.append_movement(
            db,
            cylinder_size=size,
            movement_type=MovementType.INITIAL_STOCK,
            quantity=quantity,
            actor_id=ACTOR,
            new_status=status,
        )

    return _stock


@pytest.fixture
def make_order(db):
    def _make_order(quantity: int = 4, size: CylinderSize = CylinderSize.KG19, extra_items=()):
        items = [{"product_id": 1, "cylinder_size": size, "quantity": quantity}, *extra_items]
        return create_order(db, customer_id=100, site_id=200, items=items, actor_id=ACTOR)

    return _make_order


@pytest.fixture
def loading_order(db, make_order):
    """An order walked up to ``loading``, ready to be dispatched."""

    def _loading_order(quantity: int = 4, size: CylinderSize = CylinderSize.KG19):
        order = make_order(quantity, size)
        return walk_order(
            db,
            order,
            (OrderStatus.SCHEDULED, OrderStatus.PREPARED, OrderStatus.LOADING),
            ACTOR,
        )

    return _loading_order
