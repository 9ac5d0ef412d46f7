import pytest
from pydantic import ValidationError as SchemaValidationError

import insights
import request_templates
from errors import NotFound, ValidationError


def _template(admin, **overrides):
    data = {
        "name": "Full Moon Binding",
        "service_type": "binding_spell",
        "service_name": "Binding Spell",
        "description": "Standard binding ritual",
        "category": "love",
        "default_ritual_steps": [{"step_number": 1, "step_name": "Gather herbs"}],
        "tags": ["moon"],
    }
    data.update(overrides)
    return request_templates.create_request_template(data, str(admin["_id"]))


def test_template_usage_ordering(admin):
    a = _template(admin, name="A")
    b = _template(admin, name="B")
    request_templates.increment_template_usage(str(b["_id"]))
    request_templates.increment_template_usage(str(b["_id"]))
    used = request_templates.increment_template_usage(str(a["_id"]))
    assert used["usage_count"] == 1
    assert used["last_used_at"] is not None
    assert [t["name"] for t in request_templates.get_active_templates()] == ["B", "A"]


def test_template_soft_delete(admin):
    t = _template(admin)
    request_templates.delete_request_template(str(t["_id"]), str(admin["_id"]))
    assert request_templates.get_active_templates() == []
    assert request_templates.get_request_template(str(t["_id"]))["active"] is False
    assert request_templates.increment_template_usage(str(t["_id"])) is None
    assert request_templates.get_template_count(active_only=False) == 1


def test_template_update_validates(admin):
    t = _template(admin)
    with pytest.raises(SchemaValidationError):
        request_templates.update_request_template(str(t["_id"]), {"priority": "whenever"}, str(admin["_id"]))
    updated = request_templates.update_request_template(str(t["_id"]), {"priority": "high"}, str(admin["_id"]))
    assert updated["priority"] == "high"


def test_template_search(admin):
    _template(admin, name="Court Victory", category="justice", service_name="Winning a Court Case")
    _template(admin)
    assert [t["name"] for t in request_templates.search_templates("court")] == ["Court Victory"]
    assert len(request_templates.get_templates_by_category("love")) == 1


def test_api_templates(client, admin_headers, user_headers):
    body = {"name": "Shield", "serviceType": "protection_shielding", "serviceName": "Protection & Shielding", "description": "Shield", "category": "protection"}
    assert client.post("/api/templates", json=body, headers=user_headers).status_code == 403
    res = client.post("/api/templates", json=body, headers=admin_headers)
    assert res.status_code == 201
    tid = res.json()["template"]["id"]

    assert client.get("/api/templates?category=protection").json()["count"] == 1
    used = client.post(f"/api/templates/{tid}/use", headers=user_headers).json()
    assert used["template"]["usageCount"] == 1

    assert client.delete(f"/api/templates/{tid}", headers=admin_headers).status_code == 200
    assert client.get("/api/templates").json()["count"] == 0


def test_insight_created_inactive(admin):
    insight = insights.create_insight({"title": "Moon", "content": "The moon wanes."}, str(admin["_id"]))
    assert insight["active"] is False
    assert insight["preview_text"] == "The moon wanes."


def test_insight_requires_title_and_content():
    with pytest.raises(ValidationError):
        insights.create_insight({"title": "Only title"})


def test_single_active_insight_per_frequency(admin):
    first = insights.create_insight({"title": "One", "content": "1"})
    second = insights.create_insight({"title": "Two", "content": "2"})
    weekly = insights.create_insight({"title": "Week", "content": "w", "frequency": "weekly"})
    insights.set_active_insight(str(first["_id"]))
    insights.set_active_insight(str(weekly["_id"]))
    insights.set_active_insight(str(second["_id"]), str(admin["_id"]))

    active_daily = insights.list_insights(frequency="daily", active=True)
    assert [i["title"] for i in active_daily] == ["Two"]
    assert insights.get_active_insight("weekly")["title"] == "Week"


def test_insight_delete():
    insight = insights.create_insight({"title": "Gone", "content": "soon"})
    assert insights.delete_insight(str(insight["_id"])) is True
    assert insights.delete_insight(str(insight["_id"])) is False
    with pytest.raises(NotFound):
        insights.set_active_insight(str(insight["_id"]))


def test_api_insights(client, admin_headers):
    res = client.post("/api/insights", json={"title": "Sun", "content": "Light returns", "tags": ["solstice"]}, headers=admin_headers)
    assert res.status_code == 201
    iid = res.json()["insight"]["id"]
    assert client.get("/api/insights/active").json()["insight"] is None

    res = client.put(f"/api/insights/{iid}", json={"active": True}, headers=admin_headers)
    assert res.json()["insight"]["active"] is True
    assert client.get("/api/insights/active").json()["insight"]["id"] == iid
    assert client.get("/api/insights?tags=solstice").json()["count"] == 1

    res = client.put(f"/api/insights/{iid}", json={"active": False}, headers=admin_headers)
    assert res.json()["insight"]["active"] is False
