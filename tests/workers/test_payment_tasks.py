"""
Celery tasks for payments and generations, called in-process with the session and services patched.
"""
from unittest.mock import MagicMock, patch

import pytest
from celery.exceptions import Retry
from sqlalchemy import update

from app.core.exceptions import GatewayError, UnknownGenerationError, UnknownPaymentError
from app.models.user import User
from app.workers.tasks.generation import run_generation
from app.workers.tasks.payments import audit_balances, reconcile_payment


class TestReconcilePaymentTask:
    @patch("app.workers.tasks.payments.SessionLocal")
    @patch("app.workers.tasks.payments.PaymentService")
    def test_success(self, mock_service_cls, mock_session_local):
        mock_service_cls.return_value.refresh_and_reconcile.return_value = MagicMock(status="succeeded")

        result = reconcile_payment("pay_1", "payment.succeeded")

        assert result == {"ok": True, "payment_id": "pay_1", "status": "succeeded"}
        mock_service_cls.return_value.gateway.close.assert_called_once()
        mock_session_local.return_value.close.assert_called_once()

    @patch("app.workers.tasks.payments.SessionLocal")
    @patch("app.workers.tasks.payments.PaymentService")
    def test_unknown_payment_is_retried(self, mock_service_cls, mock_session_local):
        mock_service_cls.return_value.refresh_and_reconcile.side_effect = UnknownPaymentError("pay_1")

        with pytest.raises(Retry):
            reconcile_payment("pay_1", "payment.succeeded")

        mock_session_local.return_value.close.assert_called_once()

    @patch("app.workers.tasks.payments.SessionLocal")
    @patch("app.workers.tasks.payments.PaymentService")
    def test_unknown_payment_dropped_after_retries(self, mock_service_cls, mock_session_local):
        mock_service_cls.return_value.refresh_and_reconcile.side_effect = UnknownPaymentError("pay_1")

        with patch.object(reconcile_payment, "max_retries", 0):
            result = reconcile_payment("pay_1", "payment.succeeded")

        assert result == {"ok": False, "error": "unknown_payment"}

    @patch("app.workers.tasks.payments.SessionLocal")
    @patch("app.workers.tasks.payments.PaymentService")
    def test_gateway_unavailable_after_retries(self, mock_service_cls, mock_session_local):
        mock_service_cls.return_value.refresh_and_reconcile.side_effect = GatewayError("HTTP 503")

        with patch.object(reconcile_payment, "max_retries", 0):
            result = reconcile_payment("pay_1")

        assert result == {"ok": False, "error": "gateway_unavailable"}

    @patch("app.workers.tasks.payments.SessionLocal")
    @patch("app.workers.tasks.payments.PaymentService")
    def test_dropped_event(self, mock_service_cls, mock_session_local):
        mock_service_cls.return_value.refresh_and_reconcile.return_value = None

        result = reconcile_payment("pay_1")

        assert result["ok"] is False
        assert result["error"] == "dropped"


class TestAuditBalancesTask:
    def test_reports_drift(self, db, make_user):
        user = make_user(balance=30000)
        make_user(balance=15000)
        db.execute(update(User).where(User.id == user.id).values(balance=0))
        db.commit()

        with patch("app.workers.tasks.payments.SessionLocal", return_value=db):
            result = audit_balances()

        assert result == {"ok": True, "drift": 1}


class TestRunGenerationTask:
    @patch("app.workers.tasks.generation.SessionLocal")
    @patch("app.workers.tasks.generation.GenerationService")
    def test_reports_refund(self, mock_service_cls, mock_session_local):
        mock_service_cls.return_value.run.return_value = MagicMock(
            id="gen-1", status="failed", refund_transaction_id="tx-9"
        )

        result = run_generation("gen-1")

        assert result == {"ok": False, "generation_id": "gen-1", "status": "failed", "refunded": True}
        mock_service_cls.return_value.run.assert_called_once_with("gen-1", input_image_path=None)

    @patch("app.workers.tasks.generation.SessionLocal")
    @patch("app.workers.tasks.generation.GenerationService")
    def test_unknown_generation(self, mock_service_cls, mock_session_local):
        mock_service_cls.return_value.run.side_effect = UnknownGenerationError("gen-x")

        assert run_generation("gen-x") == {"ok": False, "error": "generation_not_found"}
