"""
Tests: Service Log HTTP API.

Covers the JSON surface under /api/v1/service-plans and how engine errors
map to status codes:
    401 missing/expired token     403 org/role/queue access
    404 unknown or foreign plan   409 invalid transition
    422 validation                400/415 malformed request
    503 store unavailable (retryable)
"""

import pytest
from sqlalchemy.exc import OperationalError

from servicelog.core.actor import ActorContext
from servicelog.models import db as _db
from servicelog.models.organization import Organization, User
from servicelog.services import plan_store

BASE = "/api/v1/service-plans"

PAYLOAD = {
    "service_type": "individual",
    "planned_date": "2025-03-01",
    "planned_duration_minutes": 60,
    "setting": "outpatient",
}


def _create(client, headers, **overrides):
    res = client.post(BASE, json={**PAYLOAD, **overrides}, headers=headers)
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _act(client, plan_id, headers, action, **body):
    return client.post(f"{BASE}/{plan_id}/actions", json={"action": action, **body}, headers=headers)


@pytest.fixture()
def peer_h(auth_headers, peer_actor):
    return auth_headers(peer_actor)


@pytest.fixture()
def sup_h(auth_headers, supervisor_actor):
    return auth_headers(supervisor_actor)


# ═════════════════════════════════════════════════════════════════════════
# Happy paths
# ═════════════════════════════════════════════════════════════════════════


def test_create_returns_plan_with_actions(client, peer_h, peer):
    data = _create(client, peer_h, participant_id="p-7")

    assert data["status"] == "draft"
    assert data["created_by"] == peer.id
    assert data["participant_id"] == "p-7"
    assert data["available_actions"] == ["submit", "cancel", "edit"]
    assert data["overdue"] is False


def test_full_lifecycle_over_http(client, peer_h, sup_h):
    plan_id = _create(client, peer_h, status="planned")["id"]

    res = _act(client, plan_id, sup_h, "approve", comment="go ahead")
    assert res.status_code == 200
    assert res.get_json()["status"] == "approved"

    res = _act(
        client, plan_id, peer_h, "complete",
        actual_duration_minutes=40, attendance_count=2,
        delivered_as_planned=False, deviation_notes="ran short",
    )
    assert res.status_code == 200
    assert res.get_json()["status"] == "completed"
    assert res.get_json()["deviation_notes"] == "ran short"

    res = _act(client, plan_id, sup_h, "verify")
    assert res.get_json()["status"] == "verified"

    history = client.get(f"{BASE}/{plan_id}/history", headers=peer_h).get_json()
    assert history["plan_id"] == plan_id
    assert [e["action"] for e in history["events"]] == ["created", "approved", "completed", "verified"]
    assert history["events"][1]["comment"] == "go ahead"


def test_get_includes_comments_and_actions(client, peer_h, sup_h):
    plan_id = _create(client, peer_h, status="planned")["id"]
    _act(client, plan_id, sup_h, "comment", comment="confirm the room")

    res = client.get(f"{BASE}/{plan_id}", headers=sup_h)

    assert res.status_code == 200
    data = res.get_json()
    assert [c["comment"] for c in data["comments"]] == ["confirm the room"]
    assert data["available_actions"] == ["approve", "comment", "request-change"]


def test_list_and_mine_filter(client, peer_h, auth_headers, other_peer_actor):
    mine = _create(client, peer_h)["id"]
    _create(client, auth_headers(other_peer_actor))

    everything = client.get(BASE, headers=peer_h).get_json()
    assert everything["count"] == 2

    own = client.get(f"{BASE}?mine=true", headers=peer_h).get_json()
    assert [item["id"] for item in own["items"]] == [mine]


def test_patch_edits_draft(client, peer_h):
    plan_id = _create(client, peer_h)["id"]

    res = client.patch(f"{BASE}/{plan_id}", json={"setting": "community"}, headers=peer_h)

    assert res.status_code == 200
    assert res.get_json()["setting"] == "community"


def test_delete_soft_deletes(client, peer_h):
    plan_id = _create(client, peer_h)["id"]

    res = client.delete(f"{BASE}/{plan_id}", headers=peer_h)

    assert res.status_code == 200
    body = res.get_json()
    assert body["deleted"] is True
    assert body["plan"]["deleted_at"] is not None
    assert client.get(f"{BASE}/{plan_id}", headers=peer_h).status_code == 404
    history = client.get(f"{BASE}/{plan_id}/history", headers=peer_h).get_json()
    assert history["events"][-1]["action"] == "deleted"


def test_cancel_action_returns_deleted_shape(client, peer_h):
    plan_id = _create(client, peer_h)["id"]

    res = _act(client, plan_id, peer_h, "cancel", comment="participant moved")

    assert res.status_code == 200
    assert res.get_json()["deleted"] is True


def test_session_note_handoff_and_link(client, peer_h, org, make_plan):
    plan = make_plan("completed")

    res = client.get(f"{BASE}/{plan.id}/session-note", headers=peer_h)
    assert res.status_code == 200
    handoff = res.get_json()
    assert handoff["plannedDate"] == "2025-03-01"
    assert handoff["actualDuration"] == 45

    res = client.post(f"{BASE}/{plan.id}/session-note", json={"session_note_id": "sn-1"}, headers=peer_h)
    assert res.status_code == 200
    assert res.get_json()["session_note_id"] == "sn-1"


def test_dashboard_for_peer_and_supervisor(client, peer_h, sup_h, peer, make_plan):
    make_plan("planned")

    mine = client.get(f"{BASE}/dashboard", headers=peer_h).get_json()
    assert mine["peer_id"] == peer.id
    assert mine["counts"]["planned"] == 1

    assert client.get(f"{BASE}/dashboard", headers=sup_h).status_code == 400
    other = client.get(f"{BASE}/dashboard?peer_id={peer.id}", headers=sup_h).get_json()
    assert other["counts"]["planned"] == 1


def test_review_queue_for_supervisor(client, sup_h, make_plan):
    planned = make_plan("planned")
    completed = make_plan("completed")

    res = client.get(f"{BASE}/review-queue", headers=sup_h)

    assert res.status_code == 200
    queue = res.get_json()
    assert [i["id"] for i in queue["pending_approval"]] == [planned.id]
    assert [i["id"] for i in queue["pending_verification"]] == [completed.id]
    assert queue["pending_approval"][0]["peer_name"] == "Pat Peer"


def test_health_needs_no_token(client):
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"


def test_responses_carry_request_id(client, peer_h):
    res = client.get(BASE, headers=peer_h)
    assert res.headers.get("X-Request-ID")


# ═════════════════════════════════════════════════════════════════════════
# Authentication & actor context
# ═════════════════════════════════════════════════════════════════════════


def test_missing_token_is_401(client):
    res = client.get(BASE)
    assert res.status_code == 401
    assert res.get_json()["code"] == "ERR_UNAUTHORIZED"


def test_expired_token_is_401(client, auth_headers, peer_actor):
    res = client.get(BASE, headers=auth_headers(peer_actor, expires_in=-10))
    assert res.status_code == 401
    assert res.get_json()["error"] == "Token has expired"


def test_garbage_token_is_401(client):
    res = client.get(BASE, headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


def test_inactive_organization_is_403(client, org, peer_h):
    _db.session.get(Organization, org.id).is_active = False
    _db.session.commit()

    res = client.get(BASE, headers=peer_h)

    assert res.status_code == 403
    assert res.get_json()["code"] == "ERR_FORBIDDEN"


def test_unknown_role_is_403(client, auth_headers, org, peer):
    actor = ActorContext(actor_id=peer.id, organization_id=org.id, role="admin")
    res = client.get(BASE, headers=auth_headers(actor))
    assert res.status_code == 403


def test_review_queue_as_peer_is_403(client, peer_h):
    res = client.get(f"{BASE}/review-queue", headers=peer_h)
    assert res.status_code == 403
    assert res.get_json()["code"] == "ERR_FORBIDDEN"


# ═════════════════════════════════════════════════════════════════════════
# Engine error mapping
# ═════════════════════════════════════════════════════════════════════════


def test_unknown_plan_is_404(client, peer_h):
    res = client.get(f"{BASE}/does-not-exist", headers=peer_h)
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"


def test_foreign_plan_is_404(client, peer_h):
    other = Organization(name="Lighthouse", slug="lighthouse")
    _db.session.add(other)
    _db.session.commit()
    rio = User(organization_id=other.id, email="rio@lighthouse.test", full_name="Rio Rival")
    _db.session.add(rio)
    _db.session.commit()
    foreign = plan_store.create_plan(
        other.id, ActorContext(actor_id=rio.id, organization_id=other.id, role="peer"), dict(PAYLOAD),
    )

    for res in (
        client.get(f"{BASE}/{foreign.id}", headers=peer_h),
        client.get(f"{BASE}/{foreign.id}/history", headers=peer_h),
        client.delete(f"{BASE}/{foreign.id}", headers=peer_h),
    ):
        assert res.status_code == 404


def test_validation_error_is_422_with_details(client, peer_h):
    res = client.post(BASE, json={**PAYLOAD, "planned_duration_minutes": 0}, headers=peer_h)

    assert res.status_code == 422
    body = res.get_json()
    assert body["code"] == "ERR_VALIDATION_INVALID"
    assert "planned_duration_minutes" in body["details"]


def test_completion_without_deviation_notes_is_422(client, peer_h, make_plan):
    plan = make_plan("planned")

    res = _act(
        client, plan.id, peer_h, "complete",
        actual_duration_minutes=30, attendance_count=1, delivered_as_planned=False,
    )

    assert res.status_code == 422
    assert "deviation_notes" in res.get_json()["details"]


def test_invalid_transition_is_409(client, sup_h, make_plan):
    plan = make_plan("draft")

    res = _act(client, plan.id, sup_h, "approve")

    assert res.status_code == 409
    body = res.get_json()
    assert body["code"] == "ERR_CONFLICT_STATE"
    assert body["details"]["action"] == "approve"
    assert body["details"]["current_status"] == "draft"


def test_wrong_role_is_403(client, peer_h, make_plan):
    plan = make_plan("planned")

    res = _act(client, plan.id, peer_h, "approve")

    assert res.status_code == 403
    assert res.get_json()["code"] == "ERR_ROLE_NOT_PERMITTED"


def test_supervisor_cannot_create(client, sup_h):
    res = client.post(BASE, json=PAYLOAD, headers=sup_h)
    assert res.status_code == 403


def test_unknown_action_is_422(client, peer_h, make_plan):
    plan = make_plan("draft")
    res = _act(client, plan.id, peer_h, "archive")
    assert res.status_code == 422


@pytest.mark.parametrize("body", [[1, 2], "text", {}])
def test_malformed_action_body_is_400(client, peer_h, make_plan, body):
    plan = make_plan("draft")
    res = client.post(f"{BASE}/{plan.id}/actions", json=body, headers=peer_h)
    assert res.status_code == 400
    assert res.get_json()["code"] == "ERR_BAD_REQUEST"


def test_non_json_body_is_415(client, peer_h):
    res = client.post(BASE, data="service_type=individual", headers=peer_h,
                      content_type="application/x-www-form-urlencoded")
    assert res.status_code == 415


def test_bad_limit_is_400(client, peer_h):
    res = client.get(f"{BASE}?limit=lots", headers=peer_h)
    assert res.status_code == 400


def test_store_failure_is_503_retryable(monkeypatch, client, peer_h, make_plan):
    plan = make_plan("draft")

    def _boom():
        raise OperationalError("COMMIT", {}, Exception("connection reset"))

    monkeypatch.setattr(_db.session, "commit", _boom)
    res = _act(client, plan.id, peer_h, "submit")
    monkeypatch.undo()

    assert res.status_code == 503
    body = res.get_json()
    assert body["code"] == "ERR_STORE_UNAVAILABLE"
    assert body["retryable"] is True
    assert plan_store.get_plan(plan.organization_id, plan.id).status == "draft"
