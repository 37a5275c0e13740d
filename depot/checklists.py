"""Safety checklists and the gate that consults them.

Responses are written by the checklist UI through the HTTP surface. The gate
is a pure read: for each active template that blocks on failure and applies
to the entity type, the most recent completed response inside the window
decides. A failed one blocks until a newer response passes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from depot.config import settings
from depot.enums import ChecklistEntity, ChecklistItemType, ChecklistStatus
from depot.errors import ChecklistBlocked, ChecklistIncomplete, InvalidTransition, NotFound, ValidationFailed
from depot.models import ChecklistAnswer, ChecklistResponse, ChecklistTemplate, ChecklistTemplateItem
from depot.numbering import day_prefix, next_reference
from depot.transitions import compare_and_set, utcnow

logger = logging.getLogger(__name__)

_PASSING_ANSWERS = {"yes", "n/a", "na"}


@dataclass
class GateDecision:
    entity_type: ChecklistEntity
    entity_id: int
    blocked: bool = False
    response_id: Optional[int] = None
    template_code: Optional[str] = None
    failed_items: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "blocked": self.blocked,
            "checklist_response_id": self.response_id,
            "template_code": self.template_code,
            "failed_items": self.failed_items,
        }


def create_template(
    db: Session,
    code: str,
    name: str,
    entity_type: Union[ChecklistEntity, str],
    items: list[dict],
    blocks_on_failure: bool = False,
) -> ChecklistTemplate:
    if not items:
        raise ValidationFailed("a checklist template needs at least one item")
    exists = db.execute(select(ChecklistTemplate.id).where(ChecklistTemplate.code == code)).first()
    if exists:
        raise ValidationFailed(f"template code {code} already exists", code=code)
    template = ChecklistTemplate(
        code=code,
        name=name,
        entity_type=ChecklistEntity(entity_type),
        blocks_on_failure=blocks_on_failure,
        is_active=True,
        created_at=utcnow(),
    )
    for sequence, item in enumerate(items, start=1):
        template.items.append(
            ChecklistTemplateItem(
                sequence=sequence,
                question=item["question"],
                item_type=ChecklistItemType(item.get("item_type", ChecklistItemType.YES_NO)),
                is_critical=item.get("is_critical", False),
                is_mandatory=item.get("is_mandatory", True),
                expected_min=item.get("expected_min"),
                expected_max=item.get("expected_max"),
            )
        )
    db.add(template)
    db.flush()
    return template


def get_response(db: Session, response_id: int) -> ChecklistResponse:
    response = db.get(ChecklistResponse, response_id)
    if response is None:
        raise NotFound("checklist response not found", response_id=response_id)
    return response


def start_response(
    db: Session,
    template_id: int,
    entity_type: Union[ChecklistEntity, str],
    entity_id: int,
    actor_id: int,
) -> ChecklistResponse:
    template = db.get(ChecklistTemplate, template_id)
    if template is None:
        raise NotFound("checklist template not found", template_id=template_id)
    if not template.is_active:
        raise ValidationFailed("responses can only be started for active templates", template_id=template_id)
    entity_type = ChecklistEntity(entity_type)
    if entity_type != template.entity_type:
        raise ValidationFailed(
            f"template {template.code} applies to {template.entity_type.value}, not {entity_type.value}"
        )
    now = utcnow()
    response = ChecklistResponse(
        response_ref=next_reference(db, ChecklistResponse.response_ref, day_prefix("CHK", now), 4),
        template_id=template.id,
        entity_type=entity_type,
        entity_id=entity_id,
        status=ChecklistStatus.IN_PROGRESS,
        blocked=False,
        failed_critical_count=0,
        failed_non_critical_count=0,
        actor_id=actor_id,
        started_at=now,
    )
    db.add(response)
    db.flush()
    logger.info("Checklist %s started: %s for %s %s", response.response_ref, template.code, entity_type.value, entity_id)
    return response


def score_answer(item: ChecklistTemplateItem, value: Optional[str], numeric_value: Optional[float]) -> bool:
    if item.item_type == ChecklistItemType.YES_NO:
        return (value or "").strip().lower() in _PASSING_ANSWERS
    if numeric_value is None:
        return False
    if item.expected_min is not None and numeric_value < item.expected_min:
        return False
    if item.expected_max is not None and numeric_value > item.expected_max:
        return False
    return True


def _ensure_in_progress(response: ChecklistResponse, requested: ChecklistStatus) -> None:
    if response.status != ChecklistStatus.IN_PROGRESS:
        raise InvalidTransition("checklist_response", response.status.value, requested.value)


def submit_answers(db: Session, response_id: int, answers: Iterable[dict]) -> ChecklistResponse:
    response = get_response(db, response_id)
    _ensure_in_progress(response, ChecklistStatus.IN_PROGRESS)
    items = {item.id: item for item in response.template.items}
    existing = {answer.item_id: answer for answer in response.answers}
    now = utcnow()
    for payload in answers:
        item = items.get(payload["item_id"])
        if item is None:
            raise ValidationFailed("answer references an item outside this template", item_id=payload["item_id"])
        passed = score_answer(item, payload.get("value"), payload.get("numeric_value"))
        answer = existing.get(item.id)
        if answer is None:
            answer = ChecklistAnswer(item_id=item.id, passed=passed, answered_at=now)
            response.answers.append(answer)
            existing[item.id] = answer
        answer.value = payload.get("value")
        answer.numeric_value = payload.get("numeric_value")
        answer.issue_notes = payload.get("issue_notes")
        answer.passed = passed
        answer.answered_at = now

    failed = [answer for answer in existing.values() if not answer.passed]
    response.failed_critical_count = sum(1 for a in failed if items[a.item_id].is_critical)
    response.failed_non_critical_count = len(failed) - response.failed_critical_count
    db.flush()
    return response


def complete_response(
    db: Session, response_id: int, actor_id: int, notes: Optional[str] = None
) -> ChecklistResponse:
    response = get_response(db, response_id)
    _ensure_in_progress(response, ChecklistStatus.COMPLETED)
    answered = {answer.item_id for answer in response.answers}
    missing = [item.question for item in response.template.items if item.is_mandatory and item.id not in answered]
    if missing:
        raise ChecklistIncomplete("mandatory items are unanswered", missing_items=missing)

    passed = response.failed_critical_count == 0
    blocked = response.template.blocks_on_failure and not passed
    compare_and_set(
        db,
        ChecklistResponse,
        response.id,
        ChecklistStatus.IN_PROGRESS,
        ChecklistStatus.COMPLETED,
        entity="checklist_response",
        passed=passed,
        blocked=blocked,
        notes=notes,
        completed_at=utcnow(),
    )
    if blocked:
        logger.warning(
            "Checklist %s failed with %d critical failures; %s %s is blocked",
            response.response_ref,
            response.failed_critical_count,
            response.entity_type.value,
            response.entity_id,
        )
    else:
        logger.info("Checklist %s completed (passed=%s) by actor %s", response.response_ref, passed, actor_id)
    return response


def cancel_response(db: Session, response_id: int, actor_id: int, reason: Optional[str] = None) -> ChecklistResponse:
    response = get_response(db, response_id)
    _ensure_in_progress(response, ChecklistStatus.CANCELLED)
    compare_and_set(
        db,
        ChecklistResponse,
        response.id,
        ChecklistStatus.IN_PROGRESS,
        ChecklistStatus.CANCELLED,
        entity="checklist_response",
        notes=reason,
        completed_at=utcnow(),
    )
    logger.info("Checklist %s cancelled by actor %s", response.response_ref, actor_id)
    return response


def evaluate_gate(
    db: Session,
    entity_type: Union[ChecklistEntity, str],
    entity_id: int,
    now: Optional[datetime] = None,
    window: Optional[timedelta] = None,
) -> GateDecision:
    entity_type = ChecklistEntity(entity_type)
    now = now or utcnow()
    since = now - (window or timedelta(hours=settings.checklist_gate_window_hours))
    decision = GateDecision(entity_type=entity_type, entity_id=entity_id)
    templates = db.execute(
        select(ChecklistTemplate)
        .where(
            ChecklistTemplate.entity_type == entity_type,
            ChecklistTemplate.blocks_on_failure.is_(True),
            ChecklistTemplate.is_active.is_(True),
        )
        .order_by(ChecklistTemplate.id)
    ).scalars().all()
    for template in templates:
        latest = db.execute(
            select(ChecklistResponse)
            .where(
                ChecklistResponse.template_id == template.id,
                ChecklistResponse.entity_type == entity_type,
                ChecklistResponse.entity_id == entity_id,
                ChecklistResponse.status == ChecklistStatus.COMPLETED,
                ChecklistResponse.completed_at >= since,
                ChecklistResponse.completed_at <= now,
            )
            .order_by(ChecklistResponse.completed_at.desc(), ChecklistResponse.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if latest is None or latest.passed is not False:
            continue
        decision.blocked = True
        decision.response_id = latest.id
        decision.template_code = template.code
        decision.failed_items = [
            {"item_id": answer.item_id, "question": answer.item.question}
            for answer in latest.answers
            if not answer.passed and answer.item.is_critical
        ]
        return decision
    return decision


def ensure_clear(db: Session, entities: Iterable[tuple[ChecklistEntity, Optional[int]]]) -> None:
    """Raise ``ChecklistBlocked`` for the first entity the gate blocks."""
    for entity_type, entity_id in entities:
        if entity_id is None:
            continue
        decision = evaluate_gate(db, entity_type, entity_id)
        if decision.blocked:
            raise ChecklistBlocked(
                entity_type.value,
                entity_id,
                decision.response_id,
                decision.template_code,
                decision.failed_items,
            )
