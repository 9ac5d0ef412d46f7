import pytest

import service_requests
from errors import InvalidTransition, ValidationError


def _create(user, **overrides):
    fields = dict(service_name="Binding Spell", service_type="binding_spell", description="Bind our hearts")
    fields.update(overrides)
    return service_requests.create_service_request(str(user["_id"]), **fields)


def test_create_starts_pending_with_history(user):
    req = _create(user)
    assert req["status"] == "pending"
    assert req["priority"] == "medium"
    assert req["payment_status"] == "unpaid"
    assert len(req["status_history"]) == 1
    assert req["status_history"][0]["status"] == "pending"
    assert req["status_history"][0]["updated_by"] == "system"


def test_create_requires_fields(user):
    with pytest.raises(ValidationError, match="Missing required fields"):
        _create(user, description="")


def test_status_change_appends_history_and_timestamps(user, admin):
    req = _create(user)
    rid = str(req["_id"])
    started = service_requests.update_service_request_status(rid, "in_progress", str(admin["_id"]), "Candles lit")
    assert started["status"] == "in_progress"
    assert started["started_at"] is not None
    done = service_requests.update_service_request_status(rid, "completed", str(admin["_id"]))
    assert done["completed_at"] is not None
    assert [h["status"] for h in done["status_history"]] == ["pending", "in_progress", "completed"]
    assert done["status_history"][1]["notes"] == "Candles lit"


def test_terminal_status_cannot_change(user, admin):
    rid = str(_create(user)["_id"])
    service_requests.update_service_request_status(rid, "cancelled", str(admin["_id"]))
    with pytest.raises(InvalidTransition):
        service_requests.update_service_request_status(rid, "in_progress", str(admin["_id"]))


def test_same_status_is_a_no_op(user, admin):
    rid = str(_create(user)["_id"])
    again = service_requests.update_service_request_status(rid, "pending", str(admin["_id"]))
    assert len(again["status_history"]) == 1


def test_invalid_status_rejected(user, admin):
    rid = str(_create(user)["_id"])
    with pytest.raises(ValidationError):
        service_requests.update_service_request_status(rid, "finished", str(admin["_id"]))


def test_admin_listing_orders_by_priority(user, admin):
    low = _create(user, service_name="Cleansing Rituals")
    urgent = _create(user, service_name="Court Case")
    service_requests.update_request_priority(str(low["_id"]), "low")
    service_requests.update_request_priority(str(urgent["_id"]), "urgent")
    listed = service_requests.get_admin_service_requests({}, 10, 0)
    assert [r["priority"] for r in listed] == ["urgent", "low"]


def test_analytics_counts(user, admin):
    a = _create(user)
    _create(user, service_name="Magic Rings")
    service_requests.update_service_request_status(str(a["_id"]), "completed", str(admin["_id"]))
    stats = service_requests.get_service_request_analytics()
    assert stats["total_requests"] == 2
    assert stats["completed_requests"] == 1
    assert stats["completion_rate"] == 50
    assert stats["requests_by_status"] == {"completed": 1, "pending": 1}


def test_api_create_and_owner_only_access(client, user_headers, other_headers):
    res = client.post(
        "/api/service-requests",
        json={"serviceName": "Binding Spell", "serviceType": "binding_spell", "description": "Bind us"},
        headers=user_headers,
    )
    assert res.status_code == 201
    body = res.json()
    assert body["status"] == "pending"
    assert body["serviceName"] == "Binding Spell"

    assert client.get(f"/api/service-requests/{body['id']}", headers=user_headers).status_code == 200
    assert client.get(f"/api/service-requests/{body['id']}", headers=other_headers).status_code == 403


def test_api_requires_auth(client):
    res = client.get("/api/service-requests")
    assert res.status_code == 401
    assert res.json() == {"error": "Unauthorized"}


def test_api_lists_own_requests_with_pagination(client, user, other_user, user_headers):
    _create(user)
    _create(user)
    _create(other_user)
    res = client.get("/api/service-requests?limit=500", headers=user_headers)
    body = res.json()
    assert len(body["data"]) == 2
    assert body["pagination"] == {"limit": 100, "skip": 0, "total": 2}


def test_api_admin_update_status(client, user, admin_headers):
    rid = str(_create(user)["_id"])
    res = client.put(
        f"/api/service-requests/{rid}",
        json={"status": "in_progress", "statusUpdate": "Ritual started", "priority": "high"},
        headers=admin_headers,
    )
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "in_progress"
    assert body["priority"] == "high"
    assert body["statusHistory"][-1]["notes"] == "Ritual started"


def test_api_user_cannot_update(client, user, user_headers):
    rid = str(_create(user)["_id"])
    res = client.put(f"/api/service-requests/{rid}", json={"status": "completed"}, headers=user_headers)
    assert res.status_code == 403


def test_api_invalid_transition_is_400(client, user, admin, admin_headers):
    rid = str(_create(user)["_id"])
    service_requests.update_service_request_status(rid, "completed", str(admin["_id"]))
    res = client.put(f"/api/service-requests/{rid}", json={"status": "pending"}, headers=admin_headers)
    assert res.status_code == 400
    assert "Cannot change status" in res.json()["error"]


def test_bulk_status_update(client, user, admin_headers):
    ids = [str(_create(user)["_id"]) for _ in range(3)]
    res = client.post(
        "/api/service-requests/bulk",
        json={"action": "update-status", "requestIds": ids, "status": "on_hold"},
        headers=admin_headers,
    )
    assert res.status_code == 200
    assert res.json() == {"success": True, "message": "Updated 3 requests to on_hold", "updatedCount": 3}


def test_bulk_rejects_unknown_action(client, user, admin_headers):
    rid = str(_create(user)["_id"])
    res = client.post("/api/service-requests/bulk", json={"action": "explode", "requestIds": [rid]}, headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["error"] == "Invalid action"


def test_bulk_assign_requires_admin_id(client, user, admin_headers):
    rid = str(_create(user)["_id"])
    res = client.post("/api/service-requests/bulk", json={"action": "assign-admin", "requestIds": [rid]}, headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["error"] == "adminId required"


def test_upload_photos_to_step(client, user, admin, admin_headers, tmp_path):
    rid = str(_create(user)["_id"])
    service_requests.update_ritual_steps(rid, [{"step_number": 1, "step_name": "Prepare altar"}])
    res = client.post(
        f"/api/service-requests/{rid}/upload",
        data={"stepIndex": "0"},
        files=[("files", ("altar.jpg", b"fake-image-bytes", "image/jpeg"))],
        headers=admin_headers,
    )
    assert res.status_code == 200
    body = res.json()
    assert len(body["uploadedUrls"]) == 1
    url = body["uploadedUrls"][0]
    assert url.startswith(f"/uploads/ritual-progress/{rid}_step0_")
    assert url.endswith("_altar.jpg")
    assert body["data"]["ritualSteps"][0]["photoUrls"] == [url]
    assert len(list((tmp_path / "uploads").iterdir())) == 1


def test_upload_rejects_bad_step(client, user, admin_headers):
    rid = str(_create(user)["_id"])
    res = client.post(
        f"/api/service-requests/{rid}/upload",
        data={"stepIndex": "3"},
        files=[("files", ("altar.jpg", b"x", "image/jpeg"))],
        headers=admin_headers,
    )
    assert res.status_code == 400
    assert res.json()["error"] == "Invalid step index"


def test_analytics_endpoint_is_admin_only(client, user, user_headers, admin_headers):
    _create(user)
    assert client.get("/api/service-requests/analytics/metrics", headers=user_headers).status_code == 403
    res = client.get("/api/service-requests/analytics/metrics", headers=admin_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["analytics"]["totalRequests"] == 1
    assert body["analytics"]["requestsByStatus"] == {"pending": 1}
    assert body["pendingByPriority"]["medium"] == 1


def test_api_admin_completes_request(client, user, admin_headers):
    rid = str(_create(user)["_id"])
    res = client.put(f"/api/service-requests/{rid}", json={"status": "completed"}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["completedAt"] is not None


def test_api_update_with_bad_priority_writes_nothing(client, user, admin_headers):
    rid = str(_create(user)["_id"])
    res = client.put(
        f"/api/service-requests/{rid}",
        json={"status": "completed", "priority": "extreme", "adminNotes": "Done"},
        headers=admin_headers,
    )
    assert res.status_code == 400
    assert res.json()["error"].startswith("Invalid priority")
    stored = service_requests.get_service_request(rid)
    assert stored["status"] == "pending"
    assert stored.get("admin_notes") is None
    assert len(stored["status_history"]) == 1


def test_api_update_with_bad_ritual_step_writes_nothing(client, user, admin_headers):
    rid = str(_create(user)["_id"])
    res = client.put(
        f"/api/service-requests/{rid}",
        json={"status": "in_progress", "ritualSteps": [{"step_name": "No number"}]},
        headers=admin_headers,
    )
    assert res.status_code == 400
    assert service_requests.get_service_request(rid)["status"] == "pending"


def test_api_update_with_bad_transition_writes_nothing(client, user, admin, admin_headers):
    rid = str(_create(user)["_id"])
    service_requests.update_service_request_status(rid, "cancelled", str(admin["_id"]))
    res = client.put(f"/api/service-requests/{rid}", json={"status": "in_progress", "priority": "urgent"}, headers=admin_headers)
    assert res.status_code == 400
    assert service_requests.get_service_request(rid)["priority"] == "medium"
