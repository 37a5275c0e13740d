from datetime import timedelta

import pytest

from conftest import ACTOR, VEHICLE
from depot import checklists
from depot.enums import ChecklistEntity, ChecklistItemType, ChecklistStatus
from depot.errors import ChecklistBlocked, ChecklistIncomplete, InvalidTransition, ValidationFailed
from depot.transitions import utcnow


@pytest.fixture
def template(db):
    return checklists.create_template(
        db,
        code="VEH-PRE",
        name="Vehicle pre-trip",
        entity_type=ChecklistEntity.VEHICLE,
        blocks_on_failure=True,
        items=[
            {"question": "Brakes working?", "is_critical": True},
            {"question": "Tyre pressure (psi)", "item_type": "number", "expected_min": 30, "expected_max": 40},
            {"question": "Cab clean?", "is_mandatory": False},
        ],
    )


def _run_checklist(db, template, brakes: str, psi: float = 35, entity_id: int = VEHICLE):
    response = checklists.start_response(db, template.id, ChecklistEntity.VEHICLE, entity_id, ACTOR)
    brakes_item, psi_item, _ = template.items
    checklists.submit_answers(
        db,
        response.id,
        [
            {"item_id": brakes_item.id, "value": brakes},
            {"item_id": psi_item.id, "numeric_value": psi},
        ],
    )
    return checklists.complete_response(db, response.id, ACTOR)


def test_passing_response_leaves_gate_open(db, template) -> None:
    response = _run_checklist(db, template, "yes")
    assert response.status == ChecklistStatus.COMPLETED
    assert response.passed is True
    assert response.response_ref.startswith("CHK-")
    assert checklists.evaluate_gate(db, ChecklistEntity.VEHICLE, VEHICLE).blocked is False


def test_failed_critical_item_blocks_the_entity(db, template) -> None:
    response = _run_checklist(db, template, "no")

    decision = checklists.evaluate_gate(db, "vehicle", VEHICLE)

    assert response.blocked is True
    assert response.failed_critical_count == 1
    assert decision.blocked is True
    assert decision.response_id == response.id
    assert decision.template_code == "VEH-PRE"
    assert [item["question"] for item in decision.failed_items] == ["Brakes working?"]
    with pytest.raises(ChecklistBlocked) as excinfo:
        checklists.ensure_clear(db, [(ChecklistEntity.VEHICLE, VEHICLE)])
    assert excinfo.value.details["checklist_response_id"] == response.id


def test_non_critical_failure_does_not_block(db, template) -> None:
    response = _run_checklist(db, template, "yes", psi=50)
    assert response.failed_non_critical_count == 1
    assert response.passed is True
    assert checklists.evaluate_gate(db, ChecklistEntity.VEHICLE, VEHICLE).blocked is False


def test_newer_passing_response_clears_the_block(db, template) -> None:
    _run_checklist(db, template, "no")
    _run_checklist(db, template, "yes")
    assert checklists.evaluate_gate(db, ChecklistEntity.VEHICLE, VEHICLE).blocked is False


def test_failures_outside_the_window_are_ignored(db, template) -> None:
    _run_checklist(db, template, "no")
    later = utcnow() + timedelta(hours=30)
    assert checklists.evaluate_gate(db, ChecklistEntity.VEHICLE, VEHICLE, now=later).blocked is False
    narrow = checklists.evaluate_gate(db, ChecklistEntity.VEHICLE, VEHICLE, window=timedelta(hours=1))
    assert narrow.blocked is True


def test_gate_is_scoped_to_the_entity(db, template) -> None:
    _run_checklist(db, template, "no", entity_id=99)
    assert checklists.evaluate_gate(db, ChecklistEntity.VEHICLE, VEHICLE).blocked is False
    assert checklists.evaluate_gate(db, ChecklistEntity.DRIVER, 99).blocked is False


def test_in_progress_responses_do_not_count(db, template) -> None:
    response = checklists.start_response(db, template.id, ChecklistEntity.VEHICLE, VEHICLE, ACTOR)
    checklists.submit_answers(db, response.id, [{"item_id": template.items[0].id, "value": "no"}])
    assert checklists.evaluate_gate(db, ChecklistEntity.VEHICLE, VEHICLE).blocked is False


def test_completion_requires_mandatory_answers(db, template) -> None:
    response = checklists.start_response(db, template.id, ChecklistEntity.VEHICLE, VEHICLE, ACTOR)
    checklists.submit_answers(db, response.id, [{"item_id": template.items[0].id, "value": "yes"}])
    with pytest.raises(ChecklistIncomplete) as excinfo:
        checklists.complete_response(db, response.id, ACTOR)
    assert excinfo.value.details["missing_items"] == ["Tyre pressure (psi)"]


def test_completed_response_cannot_be_cancelled(db, template) -> None:
    response = _run_checklist(db, template, "yes")
    with pytest.raises(InvalidTransition):
        checklists.cancel_response(db, response.id, ACTOR)


def test_template_must_match_the_entity_type(db, template) -> None:
    with pytest.raises(ValidationFailed):
        checklists.start_response(db, template.id, ChecklistEntity.DRIVER, 5, ACTOR)


def test_answers_are_scored_by_item_type(db, template) -> None:
    brakes, psi, _ = template.items
    assert checklists.score_answer(brakes, "Yes", None) is True
    assert checklists.score_answer(brakes, "n/a", None) is True
    assert checklists.score_answer(brakes, "no", None) is False
    assert psi.item_type == ChecklistItemType.NUMBER
    assert checklists.score_answer(psi, None, 30) is True
    assert checklists.score_answer(psi, None, 41) is False
    assert checklists.score_answer(psi, None, None) is False
