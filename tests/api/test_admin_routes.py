"""
Admin API: key check, access request review, manual credit, drift report.
"""
from sqlalchemy import update

from app.models.audit_log import AuditLog
from app.models.user import User, UserRole
from app.services.access_requests.service import AccessRequestService
from app.services.users.service import UserService


class TestAdminAuth:
    def test_missing_key_is_401(self, client):
        assert client.get("/admin/stats").status_code == 401

    def test_wrong_key_is_401(self, client):
        assert client.get("/admin/stats", headers={"X-Admin-Key": "nope"}).status_code == 401

    def test_stats(self, client, admin_headers, make_user):
        make_user(balance=30000)

        response = client.get("/admin/stats", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["total_balance"] == 30000


class TestAdminAccessRequests:
    def test_approve(self, client, db, admin_headers, make_user):
        admin = make_user(role=UserRole.ADMIN)
        user = make_user(has_access=False)
        request = AccessRequestService(db).submit(user.id)

        listed = client.get("/admin/access-requests", headers=admin_headers).json()
        assert [r["id"] for r in listed] == [request.id]

        response = client.post(
            f"/admin/access-requests/{request.id}/approve",
            json={"reviewer_telegram_id": admin.telegram_id},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "approved"

    def test_second_review_is_409(self, client, db, admin_headers, make_user):
        admin = make_user(role=UserRole.ADMIN)
        user = make_user(has_access=False)
        request = AccessRequestService(db).submit(user.id)
        url = f"/admin/access-requests/{request.id}/deny"
        payload = {"reviewer_telegram_id": admin.telegram_id}

        assert client.post(url, json=payload, headers=admin_headers).status_code == 200
        response = client.post(url, json=payload, headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["status"] == "denied"

    def test_non_admin_reviewer_is_403(self, client, db, admin_headers, make_user):
        reviewer = make_user()
        user = make_user(has_access=False)
        request = AccessRequestService(db).submit(user.id)

        response = client.post(
            f"/admin/access-requests/{request.id}/approve",
            json={"reviewer_telegram_id": reviewer.telegram_id},
            headers=admin_headers,
        )

        assert response.status_code == 403


class TestManualCredit:
    def test_credit_is_idempotent_by_reference(self, client, db, admin_headers, make_user):
        admin = make_user(role=UserRole.ADMIN)
        user = make_user()
        payload = {"amount": 150000, "reference": "invoice-17", "reviewer_telegram_id": admin.telegram_id}

        first = client.post(f"/admin/users/{user.id}/credit", json=payload, headers=admin_headers)
        second = client.post(f"/admin/users/{user.id}/credit", json=payload, headers=admin_headers)

        assert first.status_code == 200
        assert first.json()["id"] == second.json()["id"]
        assert client.get(f"/wallet/{user.telegram_id}/balance").json()["balance"] == 150000
        assert db.query(AuditLog).filter(AuditLog.action == "manual_credit").count() == 1

    def test_same_reference_for_another_user_is_a_new_credit(self, client, admin_headers, make_user):
        admin = make_user(role=UserRole.ADMIN)
        alice = make_user()
        bob = make_user()
        payload = {"amount": 30000, "reference": "invoice-1", "reviewer_telegram_id": admin.telegram_id}

        first = client.post(f"/admin/users/{alice.id}/credit", json=payload, headers=admin_headers).json()
        second = client.post(f"/admin/users/{bob.id}/credit", json=payload, headers=admin_headers).json()

        assert second["id"] != first["id"]
        assert client.get(f"/wallet/{bob.telegram_id}/balance").json()["balance"] == 30000
        assert client.get(f"/wallet/{alice.telegram_id}/balance").json()["balance"] == 30000

    def test_non_positive_amount_is_rejected(self, client, admin_headers, make_user):
        admin = make_user(role=UserRole.ADMIN)
        user = make_user()

        response = client.post(
            f"/admin/users/{user.id}/credit",
            json={"amount": 0, "reference": "x", "reviewer_telegram_id": admin.telegram_id},
            headers=admin_headers,
        )

        assert response.status_code == 422


class TestAdminUsers:
    def test_block_and_unblock(self, client, db, admin_headers, make_user):
        admin = make_user(role=UserRole.ADMIN)
        user = make_user()
        url = f"/admin/users/{user.id}/block"

        blocked = client.post(url, json={"reviewer_telegram_id": admin.telegram_id}, headers=admin_headers)
        assert blocked.status_code == 200
        assert blocked.json()["is_blocked"] is True
        assert client.post(f"/wallet/{user.telegram_id}/generations", json={}).status_code == 403

        unblocked = client.post(
            url, json={"blocked": False, "reviewer_telegram_id": admin.telegram_id}, headers=admin_headers
        )
        assert unblocked.json()["is_blocked"] is False

        history = client.get(f"/admin/users/{user.id}/audit", headers=admin_headers).json()
        assert [entry["action"] for entry in history] == ["user_blocked", "user_unblocked"]
        assert history[0]["actor_id"] == admin.id

    def test_block_requires_admin_reviewer(self, client, admin_headers, make_user):
        reviewer = make_user()
        user = make_user()

        response = client.post(
            f"/admin/users/{user.id}/block",
            json={"reviewer_telegram_id": reviewer.telegram_id},
            headers=admin_headers,
        )

        assert response.status_code == 403

    def test_block_unknown_user_is_404(self, client, admin_headers, make_user):
        admin = make_user(role=UserRole.ADMIN)

        response = client.post(
            "/admin/users/missing/block", json={"reviewer_telegram_id": admin.telegram_id}, headers=admin_headers
        )

        assert response.status_code == 404


class TestAdminCompanies:
    def test_create_list_deactivate(self, client, admin_headers, make_user):
        admin = make_user(role=UserRole.ADMIN)
        review = {"reviewer_telegram_id": admin.telegram_id}

        created = client.post("/admin/companies", json={"name": "Потолки Плюс", **review}, headers=admin_headers)
        assert created.status_code == 201
        company_id = created.json()["id"]
        assert [c["id"] for c in client.get("/admin/companies", headers=admin_headers).json()] == [company_id]

        deactivated = client.post(f"/admin/companies/{company_id}/deactivate", json=review, headers=admin_headers)

        assert deactivated.json()["is_active"] is False
        assert client.get("/admin/companies", headers=admin_headers).json() == []
        listed = client.get("/admin/companies", params={"include_inactive": True}, headers=admin_headers).json()
        assert [c["id"] for c in listed] == [company_id]

    def test_deactivate_unknown_company_is_404(self, client, admin_headers, make_user):
        admin = make_user(role=UserRole.ADMIN)

        response = client.post(
            "/admin/companies/missing/deactivate",
            json={"reviewer_telegram_id": admin.telegram_id},
            headers=admin_headers,
        )

        assert response.status_code == 404

    def test_move_user_between_companies(self, client, db, admin_headers, make_user):
        admin = make_user(role=UserRole.ADMIN)
        users = UserService(db)
        old = users.create_company("Старая")
        new = users.create_company("Новая")
        user = make_user(company_id=old.id)
        url = f"/admin/users/{user.id}/company"

        response = client.post(
            url, json={"company_id": new.id, "reviewer_telegram_id": admin.telegram_id}, headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["company_id"] == new.id
        entry = client.get(f"/admin/users/{user.id}/audit", headers=admin_headers).json()[-1]
        assert entry["action"] == "company_assigned"
        assert entry["payload"] == {"from": old.id, "to": new.id}

    def test_move_to_inactive_company_is_404(self, client, db, admin_headers, make_user):
        admin = make_user(role=UserRole.ADMIN)
        users = UserService(db)
        closed = users.create_company("Закрытая")
        users.deactivate_company(closed.id)
        user = make_user()

        response = client.post(
            f"/admin/users/{user.id}/company",
            json={"company_id": closed.id, "reviewer_telegram_id": admin.telegram_id},
            headers=admin_headers,
        )

        assert response.status_code == 404
        db.refresh(user)
        assert user.company_id is None


class TestDriftReport:
    def test_reports_tampered_balance(self, client, db, admin_headers, make_user):
        user = make_user(balance=30000)
        db.execute(update(User).where(User.id == user.id).values(balance=1))
        db.commit()

        response = client.get("/admin/ledger/drift", headers=admin_headers)

        assert response.json() == [{"user_id": user.id, "balance": 1, "ledger_sum": 30000}]


class TestHealth:
    def test_liveness(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "credit-ledger"}

    def test_metrics_are_exposed(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "ledger_operations_total" in response.text
