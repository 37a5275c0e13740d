"""Audit trail of workflow transitions.

Events are written by the service that performs the transition, in the same
unit of work, so a rolled-back transition leaves no event behind.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from depot.models import AuditEvent
from depot.transitions import utcnow

# Which event family each audited entity belongs to.
EVENT_TYPES = {
    "order": "order",
    "quote": "order",
    "refill_batch": "inventory",
    "daily_count": "inventory",
    "schedule_run": "schedule",
    "schedule_stop": "schedule",
}


def _state(status: Optional[Union[Enum, str]], **extra: Any) -> Optional[dict]:
    if status is None and not extra:
        return None
    state = {key: value for key, value in extra.items() if value is not None}
    if status is not None:
        state["status"] = status.value if isinstance(status, Enum) else status
    return state


def record_transition(
    db: Session,
    entity_type: str,
    entity_id: int,
    entity_ref: Optional[str],
    previous: Optional[Union[Enum, str]],
    new: Union[Enum, str],
    actor_id: int,
    action: str = "status_change",
    details: Optional[dict] = None,
) -> AuditEvent:
    previous_state = _state(previous)
    new_state = _state(new)
    event = AuditEvent(
        event_type=EVENT_TYPES.get(entity_type, entity_type),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        entity_ref=entity_ref,
        actor_id=actor_id,
        summary=(
            f"{entity_ref or f'{entity_type} {entity_id}'}: "
            f"{previous_state['status'] if previous_state else '-'} -> {new_state['status']}"
        ),
        previous_state=previous_state,
        new_state=new_state,
        details=details,
        occurred_at=utcnow(),
    )
    db.add(event)
    db.flush()
    return event


def entity_history(db: Session, entity_type: str, entity_id: int) -> list[AuditEvent]:
    return db.execute(
        select(AuditEvent)
        .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == entity_id)
        .order_by(AuditEvent.id)
    ).scalars().all()


def events_query(
    db: Session,
    event_type: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    actor_id: Optional[int] = None,
    occurred_from: Optional[datetime] = None,
    occurred_to: Optional[datetime] = None,
):
    query = db.query(AuditEvent)
    if event_type is not None:
        query = query.filter(AuditEvent.event_type == event_type)
    if entity_type is not None:
        query = query.filter(AuditEvent.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditEvent.entity_id == entity_id)
    if actor_id is not None:
        query = query.filter(AuditEvent.actor_id == actor_id)
    if occurred_from is not None:
        query = query.filter(AuditEvent.occurred_at >= occurred_from)
    if occurred_to is not None:
        query = query.filter(AuditEvent.occurred_at <= occurred_to)
    return query
