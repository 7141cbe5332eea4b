"""
Approval API tests (Flask test client).

Tests cover:
  - Submit → auto-assign, validation errors
  - Item detail, list filters, history
  - Auto / manual assignment responses (incl. soft "already assigned")
  - Approve / reject / cancel, conflict + forbidden responses
  - Settings GET/PUT, statistics, notifications, health probes
"""
import pytest


def _h(user):
    return {"X-User": user}


@pytest.fixture()
def item(client, reviewers):
    """Submit an item as alice; auto-assigned to admin1 + r1."""
    res = client.post(
        "/api/v1/approval-items",
        json={"title": "Cloud vendor DPIA", "module_type": "risk_assessment", "priority": "high"},
        headers=_h("alice"),
    )
    assert res.status_code == 201
    return res.get_json()["item"]


# ═════════════════════════════════════════════════════════════════════════
# ITEMS
# ═════════════════════════════════════════════════════════════════════════

class TestItems:
    def test_submit_auto_assigns(self, client, reviewers):
        res = client.post(
            "/api/v1/approval-items",
            json={"title": "Cloud vendor DPIA", "module_type": "risk_assessment",
                  "due_date": "2030-01-01T00:00:00Z"},
            headers=_h("alice"),
        )
        assert res.status_code == 201
        data = res.get_json()
        assert data["item"]["status"] == "in_review"
        assert data["item"]["created_by"] == "alice"
        assert data["item"]["priority"] == "medium"
        assert data["item"]["available_transitions"] == ["approved", "cancelled", "rejected"]
        assert data["assignment"]["assigned"] is True
        assert data["assignment"]["assignees"] == ["admin1", "r1"]
        assert data["assignment"]["strategy"] == "workload_balanced"

    def test_submit_validation(self, client):
        res = client.post(
            "/api/v1/approval-items",
            json={"title": "", "module_type": "poem"},
            headers=_h("alice"),
        )
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert "module_type" in body["details"]

    def test_submit_requires_identity(self, client):
        res = client.post("/api/v1/approval-items", json={"title": "x", "module_type": "document"})
        assert res.status_code == 422
        assert "created_by" in res.get_json()["details"]

    def test_submit_bad_due_date(self, client):
        res = client.post(
            "/api/v1/approval-items",
            json={"title": "x", "module_type": "document", "due_date": "next tuesday"},
            headers=_h("alice"),
        )
        assert res.status_code == 422

    def test_get_item(self, client, item):
        res = client.get(f"/api/v1/approval-items/{item['id']}")
        assert res.status_code == 200
        data = res.get_json()
        assert [a["assigned_to"] for a in data["assignments"]] == ["admin1", "r1"]
        assert [h["action"] for h in data["history"]] == ["created", "assigned"]

    def test_get_missing_item(self, client):
        res = client.get("/api/v1/approval-items/999")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_list_items(self, client, item):
        res = client.get("/api/v1/approval-items?status=in_review")
        assert res.status_code == 200
        assert res.get_json()["total"] == 1

        res = client.get("/api/v1/approval-items?status=pending")
        assert res.get_json()["items"] == []

    def test_list_items_by_priority_and_search(self, client, item):
        client.post(
            "/api/v1/approval-items",
            json={"title": "Phishing awareness course", "module_type": "training", "priority": "low"},
            headers=_h("alice"),
        )
        res = client.get("/api/v1/approval-items?priority=high")
        assert [i["id"] for i in res.get_json()["items"]] == [item["id"]]

        res = client.get("/api/v1/approval-items?search=phishing")
        assert [i["title"] for i in res.get_json()["items"]] == ["Phishing awareness course"]

    def test_list_items_bad_filter(self, client):
        res = client.get("/api/v1/approval-items?status=archived")
        assert res.status_code == 422
        res = client.get("/api/v1/approval-items?priority=urgent")
        assert res.status_code == 422

    def test_history(self, client, item):
        res = client.get(f"/api/v1/approval-items/{item['id']}/history")
        assert res.status_code == 200
        events = res.get_json()
        assert events[-1]["status"] == "in_review"
        assert events[-1]["performed_by"] == "auto_assignment"


# ═════════════════════════════════════════════════════════════════════════
# ASSIGNMENT
# ═════════════════════════════════════════════════════════════════════════

class TestAssignment:
    def test_auto_assign_twice_is_soft(self, client, item):
        res = client.post(f"/api/v1/approval-items/{item['id']}/auto-assign", json={})
        assert res.status_code == 200
        body = res.get_json()
        assert body["assigned"] is False
        assert body["code"] == "ERR_ALREADY_ASSIGNED"
        assert body["details"]["assignees"] == ["admin1", "r1"]

    def test_force_assign(self, client, item):
        res = client.post(f"/api/v1/approval-items/{item['id']}/auto-assign", json={"force_assign": True})
        assert res.status_code == 200
        body = res.get_json()
        assert body["assigned"] is True
        assert body["assignees"] == ["r2", "r3"]
        assert body["status"] == "in_review"

    def test_auto_assign_missing_item(self, client, reviewers):
        res = client.post("/api/v1/approval-items/404/auto-assign", json={})
        assert res.status_code == 404

    def test_manual_assign(self, client, item):
        res = client.post(
            f"/api/v1/approval-items/{item['id']}/assign",
            json={"assignees": ["r3"], "notes": "R&D input", "deadline": "2030-06-30T12:00:00"},
            headers=_h("mgr1"),
        )
        assert res.status_code == 200
        assert res.get_json()["assignees"] == ["r3"]

        detail = client.get(f"/api/v1/approval-items/{item['id']}").get_json()
        assert detail["history"][-1]["action"] == "reassigned"
        r3 = [a for a in detail["assignments"] if a["assigned_to"] == "r3"][0]
        assert r3["is_auto_assigned"] is False
        assert r3["assigned_by"] == "mgr1"
        assert r3["deadline"].startswith("2030-06-30T12:00:00")

    def test_manual_assign_forbidden(self, client, item):
        res = client.post(
            f"/api/v1/approval-items/{item['id']}/assign",
            json={"assignees": ["r3"]},
            headers=_h("op1"),
        )
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_manual_assign_requires_list(self, client, item):
        res = client.post(
            f"/api/v1/approval-items/{item['id']}/assign",
            json={"assignees": 7},
            headers=_h("mgr1"),
        )
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_manual_assign_existing_assignee_is_soft(self, client, item):
        res = client.post(
            f"/api/v1/approval-items/{item['id']}/assign",
            json={"assignees": ["r1"]},
            headers=_h("mgr1"),
        )
        assert res.status_code == 200
        assert res.get_json()["assigned"] is False

    def test_no_eligible_reviewers(self, client, reviewers):
        res = client.put(
            "/api/v1/approval-settings/assignment",
            json={"strategy_type": "department_based", "department_map": {}},
            headers=_h("admin1"),
        )
        assert res.status_code == 200

        res = client.post(
            "/api/v1/approval-items",
            json={"title": "Onboarding course", "module_type": "training"},
            headers=_h("alice"),
        )
        assert res.status_code == 201
        data = res.get_json()
        assert data["item"]["status"] == "pending"
        assert data["assignment"]["assigned"] is False

        res = client.post(f"/api/v1/approval-items/{data['item']['id']}/auto-assign", json={})
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_NO_ELIGIBLE_REVIEWERS"


# ═════════════════════════════════════════════════════════════════════════
# DECISIONS
# ═════════════════════════════════════════════════════════════════════════

class TestDecisions:
    def test_assignee_approves(self, client, item):
        res = client.post(
            f"/api/v1/approval-items/{item['id']}/status",
            json={"status": "approved", "notes": "Controls adequate"},
            headers=_h("r1"),
        )
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "approved"
        assert data["completed_at"] is not None
        assert data["available_transitions"] == []

    def test_second_decision_conflicts(self, client, item):
        client.post(f"/api/v1/approval-items/{item['id']}/status",
                    json={"status": "rejected"}, headers=_h("r1"))
        res = client.post(f"/api/v1/approval-items/{item['id']}/status",
                          json={"status": "approved"}, headers=_h("admin1"))
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_INVALID_TRANSITION"
        assert body["details"]["current_status"] == "rejected"

    def test_unassigned_reviewer_forbidden(self, client, item):
        res = client.post(f"/api/v1/approval-items/{item['id']}/status",
                          json={"status": "approved"}, headers=_h("r2"))
        assert res.status_code == 403

    def test_creator_cancels(self, client, item):
        res = client.post(f"/api/v1/approval-items/{item['id']}/status",
                          json={"status": "cancelled"}, headers=_h("alice"))
        assert res.status_code == 200
        assert res.get_json()["status"] == "cancelled"

    def test_status_required(self, client, item):
        res = client.post(f"/api/v1/approval-items/{item['id']}/status", json={}, headers=_h("r1"))
        assert res.status_code == 400

    def test_non_object_body(self, client, item):
        res = client.post(f"/api/v1/approval-items/{item['id']}/status", json=["approved"],
                          headers=_h("r1"))
        assert res.status_code == 422


# ═════════════════════════════════════════════════════════════════════════
# SETTINGS / STATISTICS / NOTIFICATIONS
# ═════════════════════════════════════════════════════════════════════════

class TestSettingsApi:
    def test_get_settings(self, client):
        res = client.get("/api/v1/approval-settings/assignment")
        assert res.status_code == 200
        data = res.get_json()
        assert data["strategy_type"] == "workload_balanced"
        assert data["max_reviewers"] == 2
        assert data["enabled"] is True

    def test_update_settings(self, client, reviewers):
        res = client.put(
            "/api/v1/approval-settings/assignment",
            json={"strategy_type": "round_robin", "max_reviewers": 1},
            headers=_h("admin1"),
        )
        assert res.status_code == 200
        assert res.get_json()["strategy_type"] == "round_robin"
        assert client.get("/api/v1/approval-settings/assignment").get_json()["max_reviewers"] == 1

    def test_update_settings_forbidden(self, client, reviewers):
        res = client.put("/api/v1/approval-settings/assignment",
                         json={"max_reviewers": 3}, headers=_h("mgr1"))
        assert res.status_code == 403

    def test_update_settings_invalid(self, client, reviewers):
        res = client.put("/api/v1/approval-settings/assignment",
                         json={"strategy_type": "lottery"}, headers=_h("admin1"))
        assert res.status_code == 422
        assert "strategy_type" in res.get_json()["details"]


class TestStatisticsApi:
    def test_statistics(self, client, item):
        res = client.get("/api/v1/approval-statistics")
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 1
        assert data["by_status"]["in_review"] == 1
        assert data["by_module_type"]["risk_assessment"] == 1
        assert data["by_priority"]["high"] == 1
        assert data["created_last_30_days"] == 1
        assert data["average_approval_hours"] is None


class TestNotificationsApi:
    def test_assignee_notifications(self, client, item):
        res = client.get("/api/v1/approval-notifications", headers=_h("r1"))
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 1
        assert data["items"][0]["title"] == "New Approval Assignment"
        assert data["items"][0]["item_id"] == item["id"]

        res = client.get("/api/v1/approval-notifications/unread-count?recipient=r1")
        assert res.get_json()["unread_count"] == 1

    def test_status_change_notifies_creator(self, client, item):
        client.post(f"/api/v1/approval-items/{item['id']}/status",
                    json={"status": "approved"}, headers=_h("r1"))
        res = client.get("/api/v1/approval-notifications?recipient=alice")
        assert [n["type"] for n in res.get_json()["items"]] == ["status_change"]

    def test_recipient_required(self, client):
        res = client.get("/api/v1/approval-notifications")
        assert res.status_code == 400


class TestHealth:
    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.headers.get("X-Request-ID")

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        data = res.get_json()
        assert data["checks"]["database"]["status"] == "ok"
        assert data["checks"]["assignment_engine"]["strategy"] == "workload_balanced"
