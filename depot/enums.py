from enum import Enum


class CylinderSize(str, Enum):
    KG9 = "9kg"
    KG14 = "14kg"
    KG19 = "19kg"
    KG48 = "48kg"


class CylinderStatus(str, Enum):
    FULL = "full"
    EMPTY = "empty"
    ISSUED = "issued"
    AT_CUSTOMER = "at_customer"
    DAMAGED = "damaged"


class MovementType(str, Enum):
    RECEIVED = "received"
    FILLED = "filled"
    RETURNED_FULL = "returned_full"
    TRANSFER_IN = "transfer_in"
    INITIAL_STOCK = "initial_stock"
    ISSUED_TO_DELIVERY = "issued_to_delivery"
    DELIVERED = "delivered"
    SCRAPPED = "scrapped"
    TRANSFER_OUT = "transfer_out"
    RETURNED_EMPTY = "returned_empty"
    COLLECTED_EMPTY = "collected_empty"
    DAMAGED = "damaged"
    ADJUSTMENT = "adjustment"
    VARIANCE_APPROVED = "variance_approved"
    VARIANCE_REJECTED = "variance_rejected"
    DEPOSIT_PAID = "deposit_paid"
    DEPOSIT_REFUNDED = "deposit_refunded"


class RefillStatus(str, Enum):
    CREATED = "created"
    INSPECTING = "inspecting"
    FILLING = "filling"
    QC = "qc"
    PASSED = "passed"
    FAILED = "failed"
    STOCKED = "stocked"


class QuoteStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CONVERTED = "converted"


class OrderStatus(str, Enum):
    CREATED = "created"
    SCHEDULED = "scheduled"
    PREPARED = "prepared"
    LOADING = "loading"
    DISPATCHED = "dispatched"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    DELIVERED = "delivered"
    PARTIAL_DELIVERY = "partial_delivery"
    FAILED = "failed"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    PLANNED = "planned"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StopStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class ChecklistEntity(str, Enum):
    VEHICLE = "vehicle"
    DRIVER = "driver"
    ORDER = "order"


class ChecklistItemType(str, Enum):
    YES_NO = "yes_no"
    NUMBER = "number"


class ChecklistStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CountStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    UNDER_INVESTIGATION = "under_investigation"
    FINALIZED = "finalized"
