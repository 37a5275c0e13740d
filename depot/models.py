from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from depot.db import Base
from depot.enums import (
    ChecklistEntity,
    ChecklistItemType,
    ChecklistStatus,
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
from depot.errors import InvalidMovement

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


def _enum(enum_cls) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )


class StockBalance(Base):
    __tablename__ = "stock_balance"
    __table_args__ = (UniqueConstraint("cylinder_size", "status", name="uq_stock_balance_key"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    cylinder_size: Mapped[CylinderSize] = mapped_column(_enum(CylinderSize), nullable=False)
    status: Mapped[CylinderStatus] = mapped_column(_enum(CylinderStatus), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CylinderMovement(Base):
    __tablename__ = "cylinder_movement"
    __table_args__ = (
        Index("ix_cylinder_movement_size_created", "cylinder_size", "created_at"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    movement_ref: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    cylinder_size: Mapped[CylinderSize] = mapped_column(_enum(CylinderSize), nullable=False)
    movement_type: Mapped[MovementType] = mapped_column(_enum(MovementType), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_status: Mapped[CylinderStatus | None] = mapped_column(_enum(CylinderStatus))
    new_status: Mapped[CylinderStatus | None] = mapped_column(_enum(CylinderStatus))
    related_order_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("customer_order.id"))
    related_batch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("refill_batch.id"))
    related_run_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("schedule_run.id"))
    related_count_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("daily_count.id"))
    actor_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


@event.listens_for(CylinderMovement, "before_update")
def _refuse_movement_update(mapper, connection, target) -> None:
    raise InvalidMovement("ledger entries are immutable", movement_id=target.id)


@event.listens_for(CylinderMovement, "before_delete")
def _refuse_movement_delete(mapper, connection, target) -> None:
    raise InvalidMovement("ledger entries cannot be deleted", movement_id=target.id)


class RefillBatch(Base):
    __tablename__ = "refill_batch"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    batch_ref: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    cylinder_size: Mapped[CylinderSize] = mapped_column(_enum(CylinderSize), nullable=False)
    planned_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[RefillStatus] = mapped_column(_enum(RefillStatus), nullable=False)
    inspected_count: Mapped[int | None] = mapped_column(Integer)
    passed_inspection_count: Mapped[int | None] = mapped_column(Integer)
    filled_count: Mapped[int | None] = mapped_column(Integer)
    qc_passed_count: Mapped[int | None] = mapped_column(Integer)
    actual_filled_count: Mapped[int | None] = mapped_column(Integer)
    quarantined: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    fill_station_id: Mapped[str | None] = mapped_column(Text)
    pre_fill_checklist_id: Mapped[int | None] = mapped_column(BigInteger)
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    inspection_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    inspected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    fill_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    filled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    qc_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    stocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    stock_movement_id: Mapped[int | None] = mapped_column(BigInteger)


class Quote(Base):
    __tablename__ = "quote"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    quote_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    customer_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    site_id: Mapped[int | None] = mapped_column(BigInteger)
    status: Mapped[QuoteStatus] = mapped_column(_enum(QuoteStatus), nullable=False)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    converted_order_id: Mapped[int | None] = mapped_column(BigInteger)
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    items: Mapped[list["QuoteItem"]] = relationship(
        back_populates="quote", order_by="QuoteItem.id", cascade="all, delete-orphan"
    )


class QuoteItem(Base):
    __tablename__ = "quote_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    quote_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("quote.id"), nullable=False)
    product_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    cylinder_size: Mapped[CylinderSize | None] = mapped_column(_enum(CylinderSize))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    quote: Mapped[Quote] = relationship(back_populates="items")


class Order(Base):
    __tablename__ = "customer_order"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    customer_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    site_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    quote_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("quote.id"))
    status: Mapped[OrderStatus] = mapped_column(_enum(OrderStatus), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    driver_id: Mapped[int | None] = mapped_column(BigInteger)
    vehicle_id: Mapped[int | None] = mapped_column(BigInteger)
    schedule_run_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("schedule_run.id"))
    stock_issued: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order", order_by="OrderItem.id", cascade="all, delete-orphan"
    )


class OrderItem(Base):
    __tablename__ = "order_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("customer_order.id"), nullable=False)
    product_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    cylinder_size: Mapped[CylinderSize | None] = mapped_column(_enum(CylinderSize))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    delivered_quantity: Mapped[int | None] = mapped_column(Integer)
    returned_quantity: Mapped[int | None] = mapped_column(Integer)

    order: Mapped[Order] = relationship(back_populates="items")


class ScheduleRun(Base):
    __tablename__ = "schedule_run"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    run_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    run_date: Mapped[date] = mapped_column(Date, nullable=False)
    vehicle_id: Mapped[int | None] = mapped_column(BigInteger)
    driver_id: Mapped[int | None] = mapped_column(BigInteger)
    status: Mapped[RunStatus] = mapped_column(_enum(RunStatus), nullable=False)
    loaded_quantities: Mapped[dict | None] = mapped_column(JSON_TYPE)
    loaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    stops: Mapped[list["ScheduleStop"]] = relationship(
        back_populates="run", order_by="ScheduleStop.sequence", cascade="all, delete-orphan"
    )


class ScheduleStop(Base):
    __tablename__ = "schedule_stop"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("schedule_run.id"), nullable=False)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("customer_order.id"), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[StopStatus] = mapped_column(_enum(StopStatus), nullable=False)
    estimated_arrival: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    actual_arrival: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)

    run: Mapped[ScheduleRun] = relationship(back_populates="stops")


class ChecklistTemplate(Base):
    __tablename__ = "checklist_template"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[ChecklistEntity] = mapped_column(_enum(ChecklistEntity), nullable=False)
    blocks_on_failure: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    items: Mapped[list["ChecklistTemplateItem"]] = relationship(
        back_populates="template", order_by="ChecklistTemplateItem.sequence", cascade="all, delete-orphan"
    )


class ChecklistTemplateItem(Base):
    __tablename__ = "checklist_template_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    template_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("checklist_template.id"), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    item_type: Mapped[ChecklistItemType] = mapped_column(_enum(ChecklistItemType), nullable=False)
    is_critical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_mandatory: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expected_min: Mapped[float | None] = mapped_column()
    expected_max: Mapped[float | None] = mapped_column()

    template: Mapped[ChecklistTemplate] = relationship(back_populates="items")


class ChecklistResponse(Base):
    __tablename__ = "checklist_response"
    __table_args__ = (
        Index("ix_checklist_response_entity", "entity_type", "entity_id", "completed_at"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    response_ref: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    template_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("checklist_template.id"), nullable=False)
    entity_type: Mapped[ChecklistEntity] = mapped_column(_enum(ChecklistEntity), nullable=False)
    entity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[ChecklistStatus] = mapped_column(_enum(ChecklistStatus), nullable=False)
    passed: Mapped[bool | None] = mapped_column(Boolean)
    blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failed_critical_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_non_critical_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text)
    actor_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    template: Mapped[ChecklistTemplate] = relationship()
    answers: Mapped[list["ChecklistAnswer"]] = relationship(
        back_populates="response", order_by="ChecklistAnswer.item_id", cascade="all, delete-orphan"
    )


class ChecklistAnswer(Base):
    __tablename__ = "checklist_answer"
    __table_args__ = (UniqueConstraint("response_id", "item_id", name="uq_checklist_answer_item"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    response_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("checklist_response.id"), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("checklist_template_item.id"), nullable=False)
    value: Mapped[str | None] = mapped_column(Text)
    numeric_value: Mapped[float | None] = mapped_column()
    passed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    issue_notes: Mapped[str | None] = mapped_column(Text)
    answered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    response: Mapped[ChecklistResponse] = relationship(back_populates="answers")
    item: Mapped[ChecklistTemplateItem] = relationship()


class DailyCount(Base):
    __tablename__ = "daily_count"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    count_date: Mapped[date] = mapped_column(Date, nullable=False)
    approval_status: Mapped[CountStatus] = mapped_column(_enum(CountStatus), nullable=False)
    counted_by: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reviewed_by: Mapped[int | None] = mapped_column(BigInteger)
    review_notes: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    items: Mapped[list["DailyCountItem"]] = relationship(
        back_populates="count", order_by="DailyCountItem.id", cascade="all, delete-orphan"
    )


class DailyCountItem(Base):
    __tablename__ = "daily_count_item"
    __table_args__ = (
        UniqueConstraint("count_id", "cylinder_size", "status", name="uq_daily_count_item_key"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    count_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("daily_count.id"), nullable=False)
    cylinder_size: Mapped[CylinderSize] = mapped_column(_enum(CylinderSize), nullable=False)
    status: Mapped[CylinderStatus] = mapped_column(_enum(CylinderStatus), nullable=False)
    physical_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    projected_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    variance: Mapped[int] = mapped_column(Integer, nullable=False)

    count: Mapped[DailyCount] = relationship(back_populates="items")


class AuditEvent(Base):
    __tablename__ = "audit_event"
    __table_args__ = (
        Index("ix_audit_event_entity", "entity_type", "entity_id", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    entity_ref: Mapped[str | None] = mapped_column(Text)
    actor_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    previous_state: Mapped[dict | None] = mapped_column(JSON_TYPE)
    new_state: Mapped[dict | None] = mapped_column(JSON_TYPE)
    details: Mapped[dict | None] = mapped_column(JSON_TYPE)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
