"""
Tests: Service plan lifecycle — transition engine and store validation.

Covers:
    - scenarios A–D (submit, approve with comment, complete, verify)
    - every allowed edge and the forbidden ones around it
    - role and ownership enforcement (RoleNotPermittedError)
    - payload validation (ValidationError) including the
      delivered_as_planned / deviation_notes coupling
    - cancellation, draft edits, session-note linking
    - available_actions and the session-note hand-off payload
"""

import pytest

from servicelog.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    RoleNotPermittedError,
    ValidationError,
)
from servicelog.services import audit_trail, plan_lifecycle, plan_store


# ── Helpers ──────────────────────────────────────────────────────────────────


def _payload(**overrides) -> dict:
    data = {
        "service_type": "individual",
        "planned_date": "2025-03-01",
        "planned_duration_minutes": 60,
        "setting": "outpatient",
    }
    data.update(overrides)
    return data


def _actions(org_id: int, plan_id: str) -> list[str]:
    return [e.action for e in audit_trail.get_history(org_id, plan_id)]


def _complete(org, plan, actor, **overrides):
    data = {"actual_duration_minutes": 45, "attendance_count": 3, "delivered_as_planned": True}
    data.update(overrides)
    return plan_lifecycle.complete_plan(org.id, plan.id, actor, **data)


# ── Scenarios ────────────────────────────────────────────────────────────────


def test_scenario_a_submit_moves_draft_to_planned(org, peer_actor):
    plan = plan_store.create_plan(org.id, peer_actor, _payload())
    assert plan.status == "draft"
    assert plan.planned_duration_minutes == 60
    assert plan.setting == "outpatient"

    plan = plan_lifecycle.submit_plan(org.id, plan.id, peer_actor)

    assert plan.status == "planned"
    assert _actions(org.id, plan.id).count("submitted") == 1


def test_scenario_b_approve_with_comment(org, peer_actor, supervisor_actor):
    plan = plan_store.create_plan(org.id, peer_actor, _payload())
    plan_lifecycle.submit_plan(org.id, plan.id, peer_actor)

    plan = plan_lifecycle.approve_plan(org.id, plan.id, supervisor_actor, comment="looks good")

    assert plan.status == "approved"
    history = audit_trail.get_history(org.id, plan.id)
    transitions = [e.action for e in history if e.action != "created"]
    assert transitions == ["submitted", "approved"]
    assert history[-1].comment == "looks good"
    assert history[-1].actor_role == "supervisor"


def test_scenario_c_complete_approved_plan(org, peer_actor, make_plan):
    plan = make_plan("approved")

    plan = _complete(org, plan, peer_actor)

    assert plan.status == "completed"
    assert plan.deviation_notes is None
    assert plan.completed_by == peer_actor.actor_id
    assert plan.completed_at is not None
    fetched = plan_store.get_plan(org.id, plan.id)
    assert fetched.actual_duration_minutes == 45
    assert fetched.attendance_count == 3
    assert fetched.delivered_as_planned is True
    assert fetched.deviation_notes is None


def test_scenario_d_verify_then_complete_again_fails(org, peer_actor, supervisor_actor, make_plan):
    plan = make_plan("approved")
    _complete(org, plan, peer_actor)

    plan = plan_lifecycle.verify_plan(org.id, plan.id, supervisor_actor)

    assert plan.status == "verified"
    assert plan.verified_at is not None
    assert plan.verified_by == supervisor_actor.actor_id
    with pytest.raises(InvalidTransitionError) as exc:
        _complete(org, plan, peer_actor)
    assert exc.value.current_status == "verified"


# ── Create ───────────────────────────────────────────────────────────────────


def test_create_can_schedule_directly(org, peer_actor):
    plan = plan_store.create_plan(
        org.id, peer_actor,
        _payload(status="planned", planned_time="09:30", service_code="H0038", participant_id="p-7"),
    )
    assert plan.status == "planned"
    assert plan.to_dict()["planned_time"] == "09:30"
    assert plan.participant_id == "p-7"
    assert plan.created_by == peer_actor.actor_id
    assert _actions(org.id, plan.id) == ["created"]


def test_create_rejects_non_initial_status(org, peer_actor):
    with pytest.raises(ValidationError) as exc:
        plan_store.create_plan(org.id, peer_actor, _payload(status="approved"))
    assert "status" in exc.value.details


def test_create_reports_every_missing_field(org, peer_actor):
    with pytest.raises(ValidationError) as exc:
        plan_store.create_plan(org.id, peer_actor, {"service_type": "individual"})
    assert set(exc.value.details) == {"planned_date", "planned_duration_minutes", "setting"}


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"setting": "spaceship"}, "setting"),
        ({"service_type": "solo"}, "service_type"),
        ({"planned_duration_minutes": 0}, "planned_duration_minutes"),
        ({"planned_duration_minutes": 1441}, "planned_duration_minutes"),
        ({"planned_duration_minutes": True}, "planned_duration_minutes"),
        ({"planned_duration_minutes": "60"}, "planned_duration_minutes"),
        ({"planned_date": "03/01/2025"}, "planned_date"),
        ({"planned_time": "25:00"}, "planned_time"),
        ({"service_code": "X" * 21}, "service_code"),
    ],
)
def test_create_rejects_invalid_field(org, peer_actor, overrides, field):
    with pytest.raises(ValidationError) as exc:
        plan_store.create_plan(org.id, peer_actor, _payload(**overrides))
    assert field in exc.value.details


def test_supervisor_cannot_create_plan(org, supervisor_actor):
    with pytest.raises(RoleNotPermittedError):
        plan_store.create_plan(org.id, supervisor_actor, _payload())


# ── State edges ──────────────────────────────────────────────────────────────


@pytest.mark.parametrize("status", ["draft", "completed", "verified"])
def test_complete_only_from_planned_or_approved(org, peer_actor, make_plan, status):
    plan = make_plan(status)
    with pytest.raises(InvalidTransitionError) as exc:
        _complete(org, plan, peer_actor)
    assert not isinstance(exc.value, RoleNotPermittedError)
    assert exc.value.current_status == status
    assert "complete" in str(exc.value)


@pytest.mark.parametrize("status", ["draft", "completed", "verified"])
@pytest.mark.parametrize("payload", [{}, {"attendance_count": 0, "delivered_as_planned": "yes"}])
def test_complete_from_wrong_state_is_conflict_whatever_the_payload(
    org, peer_actor, make_plan, status, payload,
):
    plan = make_plan(status)
    with pytest.raises(InvalidTransitionError) as exc:
        plan_lifecycle.perform_action(org.id, plan.id, "complete", peer_actor, payload)
    assert exc.value.current_status == status


def test_complete_directly_from_planned(org, peer_actor, make_plan):
    plan = make_plan("planned")
    assert _complete(org, plan, peer_actor).status == "completed"


def test_verify_requires_completed_and_names_rule(org, supervisor_actor, make_plan):
    plan = make_plan("planned")
    with pytest.raises(InvalidTransitionError) as exc:
        plan_lifecycle.verify_plan(org.id, plan.id, supervisor_actor)
    message = str(exc.value)
    assert "cannot verify a plan that has not been completed" in message
    assert "status=planned" in message


@pytest.mark.parametrize("status", ["draft", "approved", "completed", "verified"])
def test_approve_only_from_planned(org, supervisor_actor, make_plan, status):
    plan = make_plan(status)
    with pytest.raises(InvalidTransitionError) as exc:
        plan_lifecycle.approve_plan(org.id, plan.id, supervisor_actor)
    assert exc.value.current_status == status


def test_repeated_submit_reports_conflict_without_second_event(org, peer_actor, make_plan):
    plan = make_plan("draft")
    plan_lifecycle.submit_plan(org.id, plan.id, peer_actor)

    with pytest.raises(InvalidTransitionError) as exc:
        plan_lifecycle.submit_plan(org.id, plan.id, peer_actor)

    assert exc.value.current_status == "planned"
    assert _actions(org.id, plan.id).count("submitted") == 1


# ── Request change / comment ─────────────────────────────────────────────────


@pytest.mark.parametrize("status", ["draft", "planned", "approved", "completed", "verified"])
@pytest.mark.parametrize("comment", [None, "", "   "])
def test_request_change_without_comment_is_validation_error(
    org, supervisor_actor, make_plan, status, comment,
):
    plan = make_plan(status)
    with pytest.raises(ValidationError) as exc:
        plan_lifecycle.request_change(org.id, plan.id, supervisor_actor, comment)
    assert "comment" in exc.value.details


def test_request_change_returns_plan_to_draft(org, peer_actor, supervisor_actor, make_plan):
    plan = make_plan("planned")

    plan = plan_lifecycle.request_change(org.id, plan.id, supervisor_actor, "add the goal id")

    assert plan.status == "draft"
    last = audit_trail.get_history(org.id, plan.id)[-1]
    assert last.action == "change_requested"
    assert last.comment == "add the goal id"
    assert (last.from_status, last.to_status) == ("planned", "draft")

    # Reopened plan can be edited and resubmitted
    plan_lifecycle.edit_plan(org.id, plan.id, peer_actor, {"goal_id": "g-1"})
    assert plan_lifecycle.submit_plan(org.id, plan.id, peer_actor).status == "planned"


@pytest.mark.parametrize("status", ["planned", "completed"])
def test_comment_keeps_status(org, supervisor_actor, make_plan, status):
    plan = make_plan(status)
    plan = plan_lifecycle.comment_on_plan(org.id, plan.id, supervisor_actor, "check attendance sheet")
    assert plan.status == status
    last = audit_trail.get_history(org.id, plan.id)[-1]
    assert last.action == "commented"
    assert last.from_status == last.to_status == status


@pytest.mark.parametrize("comment", [None, "", "  "])
def test_comment_action_requires_text(org, supervisor_actor, make_plan, comment):
    plan = make_plan("planned")
    with pytest.raises(ValidationError) as exc:
        plan_lifecycle.comment_on_plan(org.id, plan.id, supervisor_actor, comment)
    assert "comment" in exc.value.details
    assert _actions(org.id, plan.id) == ["created"]


def test_comment_not_allowed_on_approved(org, supervisor_actor, make_plan):
    plan = make_plan("approved")
    with pytest.raises(InvalidTransitionError):
        plan_lifecycle.comment_on_plan(org.id, plan.id, supervisor_actor, "late note")


# ── Completion payload ───────────────────────────────────────────────────────


@pytest.mark.parametrize("notes", [None, "", "  "])
def test_not_delivered_as_planned_requires_deviation_notes(org, peer_actor, make_plan, notes):
    plan = make_plan("approved")
    with pytest.raises(ValidationError) as exc:
        _complete(org, plan, peer_actor, delivered_as_planned=False, deviation_notes=notes)
    assert "deviation_notes" in exc.value.details
    assert plan_store.get_plan(org.id, plan.id).status == "approved"


def test_deviation_notes_round_trip(org, peer_actor, make_plan):
    plan = make_plan("approved")
    notes = "Participant left after 30 minutes; moved to a phone check-in."

    _complete(org, plan, peer_actor, delivered_as_planned=False, deviation_notes=notes)

    fetched = plan_store.get_plan(org.id, plan.id)
    assert fetched.delivered_as_planned is False
    assert fetched.deviation_notes == notes


def test_deviation_notes_forbidden_when_delivered_as_planned(org, peer_actor, make_plan):
    plan = make_plan("approved")
    with pytest.raises(ValidationError) as exc:
        _complete(org, plan, peer_actor, deviation_notes="nothing changed")
    assert "deviation_notes" in exc.value.details


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"actual_duration_minutes": 0}, "actual_duration_minutes"),
        ({"actual_duration_minutes": None}, "actual_duration_minutes"),
        ({"attendance_count": 0}, "attendance_count"),
        ({"attendance_count": "3"}, "attendance_count"),
        ({"delivered_as_planned": "yes"}, "delivered_as_planned"),
    ],
)
def test_complete_rejects_invalid_delivery_data(org, peer_actor, make_plan, overrides, field):
    plan = make_plan("approved")
    with pytest.raises(ValidationError) as exc:
        _complete(org, plan, peer_actor, **overrides)
    assert field in exc.value.details


# ── Roles and ownership ──────────────────────────────────────────────────────


def test_peer_cannot_approve_or_verify(org, peer_actor, make_plan):
    planned = make_plan("planned")
    completed = make_plan("completed")
    with pytest.raises(RoleNotPermittedError):
        plan_lifecycle.approve_plan(org.id, planned.id, peer_actor)
    with pytest.raises(RoleNotPermittedError):
        plan_lifecycle.verify_plan(org.id, completed.id, peer_actor)


def test_supervisor_cannot_submit_or_complete(org, supervisor_actor, make_plan):
    draft = make_plan("draft")
    approved = make_plan("approved")
    with pytest.raises(RoleNotPermittedError):
        plan_lifecycle.submit_plan(org.id, draft.id, supervisor_actor)
    with pytest.raises(RoleNotPermittedError):
        _complete(org, approved, supervisor_actor)


def test_other_peer_cannot_act_on_plan(org, other_peer_actor, make_plan):
    draft = make_plan("draft")
    with pytest.raises(RoleNotPermittedError) as exc:
        plan_lifecycle.submit_plan(org.id, draft.id, other_peer_actor)
    assert "peer who created the plan" in str(exc.value)
    with pytest.raises(RoleNotPermittedError):
        plan_lifecycle.cancel_plan(org.id, draft.id, other_peer_actor)


def test_role_error_is_an_invalid_transition(org, peer_actor, make_plan):
    plan = make_plan("planned")
    with pytest.raises(InvalidTransitionError):
        plan_lifecycle.approve_plan(org.id, plan.id, peer_actor)


# ── Cancel ───────────────────────────────────────────────────────────────────


@pytest.mark.parametrize("status", ["draft", "planned"])
def test_cancel_soft_deletes_and_keeps_history(org, peer_actor, make_plan, status):
    plan = make_plan(status)

    plan = plan_lifecycle.cancel_plan(org.id, plan.id, peer_actor, comment="participant moved")

    assert plan.is_deleted
    assert plan.status == status
    with pytest.raises(NotFoundError):
        plan_store.get_plan(org.id, plan.id)
    history = audit_trail.get_history(org.id, plan.id)
    assert history[-1].action == "deleted"
    assert history[-1].comment == "participant moved"


@pytest.mark.parametrize("status", ["approved", "completed", "verified"])
def test_cancel_not_allowed_after_approval(org, peer_actor, make_plan, status):
    plan = make_plan(status)
    with pytest.raises(InvalidTransitionError):
        plan_lifecycle.cancel_plan(org.id, plan.id, peer_actor)


def test_cancelled_plan_is_terminal(org, peer_actor, make_plan):
    plan = make_plan("draft")
    plan_lifecycle.cancel_plan(org.id, plan.id, peer_actor)
    with pytest.raises(NotFoundError):
        plan_lifecycle.submit_plan(org.id, plan.id, peer_actor)


# ── Edit draft ───────────────────────────────────────────────────────────────


def test_edit_draft_records_changed_fields(org, peer_actor, make_plan):
    plan = make_plan("draft")

    plan = plan_lifecycle.edit_plan(
        org.id, plan.id, peer_actor, {"setting": "telehealth", "planned_duration_minutes": 60},
    )

    assert plan.setting == "telehealth"
    last = audit_trail.get_history(org.id, plan.id)[-1]
    assert last.action == "updated"
    assert last.details == {"fields": ["setting"]}
    assert last.to_status == "draft"


def test_edit_rejected_once_submitted(org, peer_actor, make_plan):
    plan = make_plan("planned")
    with pytest.raises(InvalidTransitionError) as exc:
        plan_lifecycle.edit_plan(org.id, plan.id, peer_actor, {"setting": "home"})
    assert exc.value.current_status == "planned"


def test_edit_of_submitted_plan_is_conflict_even_with_bad_fields(org, peer_actor, make_plan):
    plan = make_plan("planned")
    with pytest.raises(InvalidTransitionError):
        plan_lifecycle.edit_plan(org.id, plan.id, peer_actor, {"setting": "moon"})


def test_edit_without_changes_writes_nothing(org, peer_actor, make_plan):
    plan = make_plan("draft")
    version = plan.version

    with pytest.raises(ValidationError) as exc:
        plan_lifecycle.edit_plan(
            org.id, plan.id, peer_actor, {"setting": "outpatient", "planned_date": "2025-03-01"},
        )

    assert "fields" in exc.value.details
    assert _actions(org.id, plan.id) == ["created"]
    assert plan_store.get_plan(org.id, plan.id).version == version


def test_edit_validates_like_create(org, peer_actor, make_plan):
    plan = make_plan("draft")
    with pytest.raises(ValidationError) as exc:
        plan_lifecycle.edit_plan(org.id, plan.id, peer_actor, {"setting": "moon", "planned_date": ""})
    assert set(exc.value.details) == {"setting", "planned_date"}


def test_edit_with_empty_body_is_rejected(org, peer_actor, make_plan):
    plan = make_plan("draft")
    with pytest.raises(ValidationError):
        plan_lifecycle.edit_plan(org.id, plan.id, peer_actor, {})


# ── Session note ─────────────────────────────────────────────────────────────


def test_link_session_note_once(org, peer_actor, make_plan):
    plan = make_plan("completed")

    plan = plan_lifecycle.link_session_note(org.id, plan.id, peer_actor, "note-1")
    assert plan.session_note_id == "note-1"
    assert plan.status == "completed"

    with pytest.raises(InvalidTransitionError) as exc:
        plan_lifecycle.link_session_note(org.id, plan.id, peer_actor, "note-2")
    assert "already linked" in str(exc.value)
    assert plan_store.get_plan(org.id, plan.id).session_note_id == "note-1"


def test_link_session_note_requires_completed(org, peer_actor, make_plan):
    plan = make_plan("approved")
    with pytest.raises(InvalidTransitionError):
        plan_lifecycle.link_session_note(org.id, plan.id, peer_actor, "note-1")


def test_session_note_payload(org, make_plan):
    plan = make_plan("completed")
    assert plan_lifecycle.session_note_payload(plan) == {
        "plannedDate": "2025-03-01",
        "actualDuration": 45,
        "serviceType": "individual",
        "setting": "outpatient",
    }
    with pytest.raises(InvalidTransitionError):
        plan_lifecycle.session_note_payload(make_plan("draft"))


# ── Dispatcher / available actions ───────────────────────────────────────────


def test_perform_action_rejects_unknown_action(org, peer_actor, make_plan):
    plan = make_plan("draft")
    with pytest.raises(ValidationError) as exc:
        plan_lifecycle.perform_action(org.id, plan.id, "publish", peer_actor)
    assert "action" in exc.value.details


def test_perform_action_routes_payload(org, supervisor_actor, make_plan):
    plan = make_plan("planned")
    plan = plan_lifecycle.perform_action(
        org.id, plan.id, "request-change", supervisor_actor, {"comment": "wrong date"},
    )
    assert plan.status == "draft"


def test_available_actions_follow_role_ownership_and_state(
    org, peer_actor, other_peer_actor, supervisor_actor, make_plan,
):
    draft = make_plan("draft")
    planned = make_plan("planned")
    completed = make_plan("completed")

    assert plan_lifecycle.available_actions(draft, peer_actor) == ["submit", "cancel", "edit"]
    assert plan_lifecycle.available_actions(draft, other_peer_actor) == []
    assert plan_lifecycle.available_actions(draft, supervisor_actor) == []
    assert plan_lifecycle.available_actions(planned, peer_actor) == ["complete", "cancel"]
    assert plan_lifecycle.available_actions(planned, supervisor_actor) == [
        "approve", "comment", "request-change",
    ]
    assert plan_lifecycle.available_actions(completed, supervisor_actor) == ["comment", "verify"]
    assert plan_lifecycle.available_actions(completed, peer_actor) == ["link-note"]
