"""
Tests: WIR HTTP API.

Drives the lifecycle through the blueprints the way a client would:
    - record CRUD and draft visibility
    - dispatch → runner → send-to-hod → finalize → follow-up
    - error envelope per failure kind (400/401/403/404/409/422)
    - evidence by URL reference, history, actions, readiness, runs
    - discussions (author-only edit and delete)
    - checklist and member pickers
"""

import pytest

PROJECT_ID = "P1"

BASE = f"/api/v1/projects/{PROJECT_ID}"


def _as(actor_id):
    return {"X-Actor-Id": actor_id}


def _item_id(record, code):
    return next(it["id"] for it in record["items"] if it["code"] == code)


@pytest.fixture()
def api(client, members, header):
    """Small client wrapper that remembers the standard header."""

    class Api:
        def create(self, actor="C1", **overrides):
            res = client.post(f"{BASE}/wir", json={**header, **overrides}, headers=_as(actor))
            assert res.status_code == 201, res.get_json()
            return res.get_json()

        def post(self, wir_id, action, body, actor):
            return client.post(f"{BASE}/wir/{wir_id}/{action}", json=body, headers=_as(actor))

        def get(self, path, actor="C1"):
            return client.get(f"{BASE}{path}", headers=_as(actor))

        def submitted(self):
            record = self.create()
            res = self.post(record["id"], "dispatch", {"inspector_id": "U1"}, "C1")
            assert res.status_code == 200, res.get_json()
            return res.get_json()

        def recommended(self, recommendation="APPROVE_WITH_COMMENTS"):
            record = self.submitted()
            items = [
                {"item_id": _item_id(record, "CIV-01"), "status": "PASS", "value": "201"},
                {"item_id": _item_id(record, "CIV-02"), "status": "FAIL", "comment": "honeycombing"},
            ]
            res = self.post(record["id"], "runner", {"items": items}, "U1")
            assert res.status_code == 200, res.get_json()
            res = self.post(record["id"], "send-to-hod",
                            {"hod_id": "H1", "recommendation": recommendation, "remark": "Patch repair"}, "U1")
            assert res.status_code == 200, res.get_json()
            return res.get_json()

    return Api()


# ═════════════════════════════════════════════════════════════════════════════
# Records
# ═════════════════════════════════════════════════════════════════════════════


def test_health(client):
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"


def test_create_returns_draft(api):
    record = api.create()
    assert record["status"] == "Draft"
    assert record["code"] == "WIR-0001"
    assert record["bic"] == "C1"
    assert record["items"] == []
    assert record["row_version"] >= 1


def test_create_requires_actor(client, members, header):
    res = client.post(f"{BASE}/wir", json=header)
    assert res.status_code == 401
    assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"


def test_create_by_viewer_is_forbidden(client, members, header):
    res = client.post(f"{BASE}/wir", json=header, headers=_as("V1"))
    assert res.status_code == 403
    assert res.get_json()["code"] == "ERR_FORBIDDEN"


def test_non_json_body_rejected(client, members):
    res = client.post(f"{BASE}/wir", data="title=x", content_type="text/plain", headers=_as("C1"))
    assert res.status_code == 415


def test_list_hides_other_peoples_drafts(api, client):
    api.create()
    api.submitted()

    mine = client.get(f"{BASE}/wir", headers=_as("C1")).get_json()
    theirs = client.get(f"{BASE}/wir", headers=_as("U1")).get_json()

    assert mine["total"] == 2
    assert theirs["total"] == 1
    assert theirs["items"][0]["status"] == "Submitted"


def test_get_draft_as_stranger_is_404(api):
    record = api.create()
    assert api.get(f"/wir/{record['id']}", actor="U1").status_code == 404
    assert api.get(f"/wir/{record['id']}", actor="C1").status_code == 200


def test_get_draft_without_actor_is_404(api, client):
    record = api.create()
    for path in ("", "/history", "/actions", "/readiness"):
        res = client.get(f"{BASE}/wir/{record['id']}{path}")
        assert res.status_code == 404, path
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


def test_patch_draft(api, client):
    record = api.create()
    res = client.patch(
        f"{BASE}/wir/{record['id']}",
        json={"location": "Block B", "expected_row_version": record["row_version"]},
        headers=_as("C1"),
    )
    assert res.status_code == 200
    assert res.get_json()["location"] == "Block B"


def test_patch_with_stale_token_is_409(api, client):
    record = api.create()
    client.patch(f"{BASE}/wir/{record['id']}", json={"location": "first"}, headers=_as("C1"))

    res = client.patch(
        f"{BASE}/wir/{record['id']}",
        json={"location": "second", "expected_row_version": record["row_version"]},
        headers=_as("C1"),
    )
    assert res.status_code == 409
    body = res.get_json()
    assert body["code"] == "ERR_CONFLICT_STALE"
    assert body["details"]["retryable"] is True


def test_patch_unknown_field_is_422(api, client):
    record = api.create()
    res = client.patch(f"{BASE}/wir/{record['id']}", json={"status": "Approved"}, headers=_as("C1"))
    assert res.status_code == 422
    assert res.get_json()["code"] == "ERR_VALIDATION_RULE"


def test_delete_draft(api, client):
    record = api.create()
    assert client.delete(f"{BASE}/wir/{record['id']}", headers=_as("U1")).status_code == 403

    res = client.delete(f"{BASE}/wir/{record['id']}", headers=_as("C1"))
    assert res.status_code == 200
    assert res.get_json() == {"deleted": True, "id": record["id"]}
    assert api.get(f"/wir/{record['id']}").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


def test_dispatch_requires_inspector(api):
    record = api.create()
    res = api.post(record["id"], "dispatch", {}, "C1")
    assert res.status_code == 400


def test_dispatch_incomplete_header_is_422(api):
    record = api.create(activity_id=None)
    res = api.post(record["id"], "dispatch", {"inspector_id": "U1"}, "C1")
    assert res.status_code == 422
    assert "activity_id" in res.get_json()["details"]


def test_dispatch_materializes_items(api):
    record = api.submitted()
    assert record["status"] == "Submitted"
    assert record["bic"] == "U1"
    assert record["version"] == 1
    assert [it["code"] for it in record["items"]] == ["CIV-01", "CIV-02"]
    assert all(it["inspector_status"] is None for it in record["items"])


def test_second_dispatch_is_state_conflict(api):
    record = api.submitted()
    res = api.post(record["id"], "dispatch", {"inspector_id": "U1"}, "C1")
    assert res.status_code == 409
    body = res.get_json()
    assert body["code"] == "ERR_CONFLICT_STATE"
    assert body["details"]["current_status"] == "Submitted"


def test_runner_update_by_non_bic_is_403(api):
    record = api.submitted()
    items = [{"item_id": _item_id(record, "CIV-01"), "status": "PASS"}]
    assert api.post(record["id"], "runner", {"items": items}, "IH1").status_code == 403


def test_runner_update_requires_items(api):
    record = api.submitted()
    assert api.post(record["id"], "runner", {"items": []}, "U1").status_code == 400


@pytest.mark.parametrize("entry", ["oops", None, 7])
def test_runner_update_non_object_entry_is_422(api, entry):
    record = api.submitted()
    res = api.post(record["id"], "runner", {"items": [entry]}, "U1")
    assert res.status_code == 422
    assert res.get_json()["code"] == "ERR_VALIDATION_RULE"


def test_runner_update_keyed_non_object_is_422(api):
    record = api.submitted()
    res = api.post(record["id"], "runner", {"items": {_item_id(record, "CIV-01"): "PASS"}}, "U1")
    assert res.status_code == 422
    assert res.get_json()["code"] == "ERR_VALIDATION_RULE"


def test_send_to_hod_blocked_lists_missing(api):
    record = api.submitted()
    res = api.post(record["id"], "send-to-hod", {"hod_id": "H1", "recommendation": "APPROVE"}, "U1")
    assert res.status_code == 422
    body = res.get_json()
    assert body["code"] == "GATE_BLOCKED"
    civ01 = _item_id(record, "CIV-01")
    assert {"item_id": civ01, "reason": "status"} in body["details"]["missing"]
    assert {"item_id": civ01, "reason": "measurement"} in body["details"]["missing"]


def test_full_flow_to_follow_up(api):
    record = api.recommended()
    assert record["status"] == "Recommended"
    assert record["bic"] == "H1"
    assert record["inspector_recommendation"] == "APPROVE_WITH_COMMENTS"

    assert api.post(record["id"], "finalize", {"outcome": "APPROVE"}, "U1").status_code == 403

    res = api.post(record["id"], "finalize", {"outcome": "approve", "remark": "Fix snags"}, "H1")
    assert res.status_code == 200
    approved = res.get_json()
    assert approved["status"] == "Approved"
    assert approved["hod_outcome"] == "APPROVE"
    assert approved["bic"] == "C1"

    res = api.post(record["id"], "follow-up", {"date": "2026-11-10", "time": "2:30 PM", "note": "Re-check"}, "C1")
    assert res.status_code == 201
    child = res.get_json()
    assert child["status"] == "Draft"
    assert child["code"] == record["code"]
    assert child["version"] == 2
    assert child["prev_record_id"] == record["id"]
    assert [it["code"] for it in child["items"]] == ["CIV-02"]
    assert child["items"][0]["inspector_status"] is None

    again = api.post(record["id"], "follow-up", {}, "C1")
    assert again.status_code == 422


def test_finalize_requires_outcome(api):
    record = api.recommended()
    assert api.post(record["id"], "finalize", {}, "H1").status_code == 400


def test_reschedule(api):
    record = api.submitted()
    res = api.post(record["id"], "reschedule", {"date": "2026-11-05", "time": "07:15", "reason": "Rain"}, "U1")
    assert res.status_code == 200
    assert res.get_json()["reschedule"] == {
        "date": "2026-11-05", "time": "07:15", "reason": "Rain", "by_actor_id": "U1",
    }


def test_reschedule_bad_time_is_422(api):
    record = api.submitted()
    res = api.post(record["id"], "reschedule", {"date": "2026-11-05", "time": "25:99"}, "U1")
    assert res.status_code == 422


# ═════════════════════════════════════════════════════════════════════════════
# Read models
# ═════════════════════════════════════════════════════════════════════════════


def test_history_is_numbered(api):
    record = api.recommended()
    body = api.get(f"/wir/{record['id']}/history").get_json()
    assert [e["action"] for e in body["items"]] == ["Created", "Dispatched", "RunnerUpdated", "Recommended"]
    assert [e["s_no"] for e in body["items"]] == [1, 2, 3, 4]


def test_actions_depend_on_actor(api):
    record = api.submitted()
    assert api.get(f"/wir/{record['id']}/actions", actor="U1").get_json()["actions"] == [
        "runner_update", "reschedule", "send_to_hod",
    ]
    assert api.get(f"/wir/{record['id']}/actions", actor="C1").get_json()["actions"] == []


def test_readiness_overlays_recommendation(api):
    record = api.submitted()
    body = api.get(f"/wir/{record['id']}/readiness?recommendation=approve").get_json()
    assert body["ok"] is False
    assert {"item_id": None, "reason": "recommendation"} not in body["missing"]

    body = api.get(f"/wir/{record['id']}/readiness").get_json()
    assert {"item_id": None, "reason": "recommendation"} in body["missing"]


def test_item_runs(api):
    record = api.recommended()
    civ01 = next(it["id"] for it in record["items"] if it["code"] == "CIV-01")
    body = api.get(f"/wir/{record['id']}/items/{civ01}/runs").get_json()
    assert body["total"] == 1
    assert body["items"][0]["status"] == "PASS"
    assert body["items"][0]["actor_id"] == "U1"

    assert api.get(f"/wir/{record['id']}/items/nope/runs").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Evidence
# ═════════════════════════════════════════════════════════════════════════════


def test_evidence_by_reference_and_delete(api, client):
    record = api.submitted()
    civ02 = _item_id(record, "CIV-02")
    url = f"{BASE}/wir/{record['id']}/items/{civ02}/evidences"

    res = client.post(url, json={"files": [{"filename": "crack.jpg", "url": "https://cdn/crack.jpg"}]},
                      headers=_as("U1"))
    assert res.status_code == 201
    refs = res.get_json()["items"]
    assert refs[0]["url"] == "https://cdn/crack.jpg"

    res = client.delete(f"{BASE}/wir/{record['id']}/evidences/{refs[0]['id']}", headers=_as("U1"))
    assert res.status_code == 200

    actions = [e["action"] for e in api.get(f"/wir/{record['id']}/history").get_json()["items"]]
    assert actions[-2:] == ["EvidenceAdded", "EvidenceDeleted"]


def test_evidence_requires_files(api, client):
    record = api.submitted()
    civ02 = _item_id(record, "CIV-02")
    res = client.post(f"{BASE}/wir/{record['id']}/items/{civ02}/evidences", json={"files": []},
                      headers=_as("U1"))
    assert res.status_code == 400


def test_evidence_by_non_bic_is_403(api, client):
    record = api.submitted()
    civ02 = _item_id(record, "CIV-02")
    res = client.post(f"{BASE}/wir/{record['id']}/items/{civ02}/evidences",
                      json={"files": [{"filename": "a.jpg", "url": "https://cdn/a.jpg"}]},
                      headers=_as("C1"))
    assert res.status_code == 403


# ═════════════════════════════════════════════════════════════════════════════
# Discussions
# ═════════════════════════════════════════════════════════════════════════════


def test_discussion_crud(api, client):
    record = api.submitted()
    url = f"{BASE}/wir/{record['id']}/discussions"

    res = client.post(url, json={"body": "Cube test report pending"}, headers=_as("U1"))
    assert res.status_code == 201
    comment = res.get_json()
    assert comment["author_id"] == "U1"

    res = client.post(url, json={"body": "Uploading today", "parent_id": comment["id"]}, headers=_as("C1"))
    assert res.status_code == 201

    body = api.get(f"/wir/{record['id']}/discussions", actor="V1").get_json()
    assert body["total"] == 2
    assert body["items"][1]["parent_id"] == comment["id"]

    res = client.patch(f"{url}/{comment['id']}", json={"body": "edited"}, headers=_as("C1"))
    assert res.status_code == 403
    res = client.patch(f"{url}/{comment['id']}", json={"body": "Cube report received"}, headers=_as("U1"))
    assert res.status_code == 200
    assert res.get_json()["body"] == "Cube report received"

    assert client.delete(f"{url}/{comment['id']}", headers=_as("U1")).status_code == 200
    assert client.delete(f"{url}/{comment['id']}", headers=_as("U1")).status_code == 404
    assert api.get(f"/wir/{record['id']}/discussions").get_json()["total"] == 1


def test_discussion_requires_actor_and_body(api, client):
    record = api.submitted()
    url = f"{BASE}/wir/{record['id']}/discussions"
    assert client.post(url, json={"body": "hi"}).status_code == 401
    res = client.post(url, json={"body": "  "}, headers=_as("U1"))
    assert res.status_code == 422
    assert res.get_json()["code"] == "ERR_VALIDATION_RULE"


# ═════════════════════════════════════════════════════════════════════════════
# Pickers
# ═════════════════════════════════════════════════════════════════════════════


def test_checklists_filtered_by_discipline(client, checklist):
    body = client.get(f"{BASE}/checklists?discipline=Civil").get_json()
    assert [c["code"] for c in body["items"]] == ["CL-CIV-SLAB"]
    assert client.get(f"{BASE}/checklists?discipline=MEP").get_json()["total"] == 0
    assert client.get(f"{BASE}/checklists?q=slab").get_json()["total"] == 1


def test_checklist_items(client, checklist):
    body = client.get(f"{BASE}/checklists/{checklist}/items").get_json()
    assert [it["code"] for it in body["items"]] == ["CIV-01", "CIV-02"]
    assert client.get(f"{BASE}/checklists/missing/items").status_code == 404


def test_members_by_role(client, members):
    body = client.get(f"{BASE}/members?role=PMC").get_json()
    assert [m["actor_id"] for m in body["items"]] == ["U1"]
    assert client.get(f"{BASE}/members").get_json()["total"] == len(members)
    assert client.get(f"{BASE}/members?on=yesterday").status_code == 400
