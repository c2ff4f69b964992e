"""
Тесты LedgerService: зачисление ровно один раз, атомарное списание, возврат при сбое,
сверка платежей шлюза и инвариант balance == sum(succeeded).
"""
import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from app.core.exceptions import (
    InsufficientBalanceError,
    PaymentAmountMismatchError,
    UnknownGenerationError,
    UnknownPaymentError,
    UnknownUserError,
)
from app.models.generation import FailureSource, Generation, GenerationStatus
from app.models.transaction import Transaction, TransactionKind, TransactionStatus
from app.models.user import User
from app.schemas.payments import PaymentEvent
from app.services.ledger.service import LedgerService


def _event(payment_id: str, status: str = "succeeded", amount: int = 75000, **kwargs) -> PaymentEvent:
    return PaymentEvent(
        event=kwargs.pop("event", f"payment.{status}"),
        payment_id=payment_id,
        status=status,
        paid=kwargs.pop("paid", status == "succeeded"),
        amount=amount,
        **kwargs,
    )


class TestCredit:
    def test_credit_same_key_applies_once(self, db, make_user, assert_consistent):
        user = make_user()
        ledger = LedgerService(db)

        first = ledger.credit_balance(user.id, 75000, external_ref="pay_1", idempotency_key="pay_1")
        second = ledger.credit_balance(user.id, 75000, external_ref="pay_1", idempotency_key="pay_1")

        assert first.id == second.id
        assert ledger.get_balance(user.id) == 75000
        assert db.query(Transaction).filter(Transaction.user_id == user.id).count() == 1
        assert_consistent()

    def test_credit_settles_pending_in_place(self, db, make_user, assert_consistent):
        user = make_user()
        ledger = LedgerService(db)
        pending = ledger.record_pending_top_up(user.id, 30000, external_ref="pay_2")

        tx = ledger.credit_balance(user.id, 30000, external_ref="pay_2", idempotency_key="pay_2")

        assert tx.id == pending.id
        assert tx.status == TransactionStatus.SUCCEEDED
        assert tx.reconciled_at is not None
        assert ledger.get_balance(user.id) == 30000
        assert_consistent()

    def test_credit_unknown_user(self, db):
        with pytest.raises(UnknownUserError):
            LedgerService(db).credit_balance("missing", 100, external_ref=None, idempotency_key="k")
        assert db.query(Transaction).count() == 0

    @pytest.mark.parametrize("amount", [0, -100])
    def test_credit_rejects_non_positive_amount(self, db, make_user, amount):
        user = make_user()
        with pytest.raises(ValueError):
            LedgerService(db).credit_balance(user.id, amount, external_ref=None, idempotency_key="k")

    def test_record_pending_is_idempotent_by_external_ref(self, db, make_user):
        user = make_user()
        ledger = LedgerService(db)
        first = ledger.record_pending_top_up(user.id, 30000, external_ref="pay_3")
        second = ledger.record_pending_top_up(user.id, 30000, external_ref="pay_3")

        assert first.id == second.id
        assert ledger.get_balance(user.id) == 0


class TestDebit:
    def test_debit_creates_requested_generation(self, db, make_user, assert_consistent):
        user = make_user(balance=75000)
        ledger = LedgerService(db)

        generation = ledger.debit_for_generation(user.id, 7500, config={"color": "white"})

        assert generation.status == GenerationStatus.REQUESTED
        assert generation.config == {"color": "white"}
        assert ledger.get_balance(user.id) == 67500
        debit = db.query(Transaction).filter(Transaction.id == generation.transaction_id).one()
        assert debit.kind == TransactionKind.DEBIT
        assert debit.amount == -7500
        assert_consistent()

    def test_insufficient_balance_mutates_nothing(self, db, make_user, assert_consistent):
        user = make_user(balance=5000)
        ledger = LedgerService(db)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            ledger.debit_for_generation(user.id, 7500)

        assert exc_info.value.balance == 5000
        assert exc_info.value.required == 7500
        assert ledger.get_balance(user.id) == 5000
        assert db.query(Generation).count() == 0
        assert db.query(Transaction).filter(Transaction.kind == TransactionKind.DEBIT).count() == 0
        assert_consistent()

    def test_debit_exact_balance_leaves_zero(self, db, make_user):
        user = make_user(balance=7500)
        ledger = LedgerService(db)
        ledger.debit_for_generation(user.id, 7500)
        assert ledger.get_balance(user.id) == 0

    def test_debit_with_same_key_returns_existing(self, db, make_user, assert_consistent):
        user = make_user(balance=30000)
        ledger = LedgerService(db)

        first = ledger.debit_for_generation(user.id, 7500, idempotency_key="msg-42")
        second = ledger.debit_for_generation(user.id, 7500, idempotency_key="msg-42")

        assert first.id == second.id
        assert ledger.get_balance(user.id) == 22500
        assert_consistent()

    def test_same_key_from_another_user_is_a_separate_debit(self, db, make_user, assert_consistent):
        alice = make_user(balance=15000)
        bob = make_user(balance=15000)
        ledger = LedgerService(db)

        alice_gen = ledger.debit_for_generation(alice.id, 7500, idempotency_key="click-1")
        bob_gen = ledger.debit_for_generation(bob.id, 7500, idempotency_key="click-1")

        assert bob_gen.id != alice_gen.id
        assert bob_gen.user_id == bob.id
        assert ledger.get_balance(alice.id) == 7500
        assert ledger.get_balance(bob.id) == 7500
        assert_consistent()

    def test_debit_unknown_user(self, db):
        with pytest.raises(UnknownUserError):
            LedgerService(db).debit_for_generation("missing", 7500)


class TestCompleteGeneration:
    def test_success_keeps_debit(self, db, make_user, assert_consistent):
        user = make_user(balance=75000)
        ledger = LedgerService(db)
        generation = ledger.debit_for_generation(user.id, 7500)

        done = ledger.complete_generation(generation.id, success=True, result_url="/img/1.png")

        assert done.status == GenerationStatus.COMPLETED
        assert done.result_url == "/img/1.png"
        assert done.refund_transaction_id is None
        assert ledger.get_balance(user.id) == 67500
        assert_consistent()

    def test_provider_failure_refunds(self, db, make_user, assert_consistent):
        user = make_user(balance=75000)
        ledger = LedgerService(db)
        generation = ledger.debit_for_generation(user.id, 7500)

        failed = ledger.complete_generation(
            generation.id, success=False, failure_source=FailureSource.PROVIDER, error="timeout"
        )

        assert failed.status == GenerationStatus.FAILED
        assert failed.failure_source == FailureSource.PROVIDER
        refund = db.query(Transaction).filter(Transaction.id == failed.refund_transaction_id).one()
        assert refund.kind == TransactionKind.REFUND
        assert refund.amount == 7500
        assert ledger.get_balance(user.id) == 75000
        assert_consistent()

    def test_second_completion_is_noop(self, db, make_user, assert_consistent):
        user = make_user(balance=75000)
        ledger = LedgerService(db)
        generation = ledger.debit_for_generation(user.id, 7500)

        ledger.complete_generation(generation.id, success=False)
        again = ledger.complete_generation(generation.id, success=False)

        assert again.status == GenerationStatus.FAILED
        assert db.query(Transaction).filter(Transaction.kind == TransactionKind.REFUND).count() == 1
        assert ledger.get_balance(user.id) == 75000
        assert_consistent()

    def test_postprocess_failure_without_refund_policy(self, db, make_user, assert_consistent):
        user = make_user(balance=75000)
        ledger = LedgerService(db, refund_on_postprocess_failure=False)
        generation = ledger.debit_for_generation(user.id, 7500)

        failed = ledger.complete_generation(
            generation.id, success=False, failure_source=FailureSource.POSTPROCESS
        )

        assert failed.status == GenerationStatus.FAILED
        assert failed.refund_transaction_id is None
        assert ledger.get_balance(user.id) == 67500
        assert_consistent()

    def test_postprocess_failure_refunds_by_default(self, db, make_user):
        user = make_user(balance=75000)
        ledger = LedgerService(db, refund_on_postprocess_failure=True)
        generation = ledger.debit_for_generation(user.id, 7500)

        ledger.complete_generation(generation.id, success=False, failure_source=FailureSource.POSTPROCESS)

        assert ledger.get_balance(user.id) == 75000

    def test_unknown_generation(self, db):
        with pytest.raises(UnknownGenerationError):
            LedgerService(db).complete_generation("missing", success=True)


class TestReconcilePayment:
    def test_succeeded_event_credits_once(self, db, make_user, assert_consistent):
        user = make_user()
        ledger = LedgerService(db)
        ledger.record_pending_top_up(user.id, 75000, external_ref="pay_10")

        ledger.reconcile_payment(_event("pay_10"))
        tx = ledger.reconcile_payment(_event("pay_10"))

        assert tx.status == TransactionStatus.SUCCEEDED
        assert ledger.get_balance(user.id) == 75000
        assert db.query(Transaction).filter(Transaction.external_ref == "pay_10").count() == 1
        assert_consistent()

    def test_unknown_payment(self, db):
        with pytest.raises(UnknownPaymentError):
            LedgerService(db).reconcile_payment(_event("pay_nope"))

    def test_amount_mismatch_is_not_credited(self, db, make_user, assert_consistent):
        user = make_user()
        ledger = LedgerService(db)
        ledger.record_pending_top_up(user.id, 75000, external_ref="pay_11")

        with pytest.raises(PaymentAmountMismatchError):
            ledger.reconcile_payment(_event("pay_11", amount=100))

        tx = ledger.get_by_external_ref("pay_11")
        assert tx.status == TransactionStatus.PENDING
        assert ledger.get_balance(user.id) == 0
        assert_consistent()

    def test_succeeded_but_not_paid_is_ignored(self, db, make_user):
        user = make_user()
        ledger = LedgerService(db)
        ledger.record_pending_top_up(user.id, 75000, external_ref="pay_12")

        tx = ledger.reconcile_payment(_event("pay_12", paid=False))

        assert tx.status == TransactionStatus.PENDING
        assert ledger.get_balance(user.id) == 0

    @pytest.mark.parametrize(
        "reason, expected",
        [
            ("expired_on_confirmation", TransactionStatus.CANCELED),
            ("canceled_by_merchant", TransactionStatus.CANCELED),
            (None, TransactionStatus.CANCELED),
            ("insufficient_funds", TransactionStatus.FAILED),
            ("card_expired", TransactionStatus.FAILED),
        ],
    )
    def test_canceled_event_closes_pending(self, db, make_user, reason, expected):
        user = make_user()
        ledger = LedgerService(db)
        ledger.record_pending_top_up(user.id, 75000, external_ref="pay_13")

        tx = ledger.reconcile_payment(_event("pay_13", status="canceled", cancellation_reason=reason))

        assert tx.status == expected
        assert tx.reconciled_at is not None
        assert ledger.get_balance(user.id) == 0

    def test_cancel_after_success_changes_nothing(self, db, make_user, assert_consistent):
        user = make_user()
        ledger = LedgerService(db)
        ledger.record_pending_top_up(user.id, 75000, external_ref="pay_14")
        ledger.reconcile_payment(_event("pay_14"))

        tx = ledger.reconcile_payment(_event("pay_14", status="canceled"))

        assert tx.status == TransactionStatus.SUCCEEDED
        assert ledger.get_balance(user.id) == 75000
        assert_consistent()

    def test_success_after_cancel_is_not_credited(self, db, make_user):
        user = make_user()
        ledger = LedgerService(db)
        ledger.record_pending_top_up(user.id, 75000, external_ref="pay_15")
        ledger.reconcile_payment(_event("pay_15", status="canceled"))

        tx = ledger.reconcile_payment(_event("pay_15"))

        assert tx.status == TransactionStatus.CANCELED
        assert ledger.get_balance(user.id) == 0

    def test_full_purchase_cycle(self, db, make_user, assert_consistent):
        """750 ₽ пополнение, генерация за 75 ₽ падает, деньги возвращаются."""
        user = make_user()
        ledger = LedgerService(db)
        ledger.record_pending_top_up(user.id, 75000, external_ref="pay_16")
        ledger.reconcile_payment(_event("pay_16"))

        generation = ledger.debit_for_generation(user.id, 7500)
        assert ledger.get_balance(user.id) == 67500
        ledger.complete_generation(generation.id, success=False, error="provider down")

        assert ledger.get_balance(user.id) == 75000
        kinds = sorted(t.kind for t in ledger.list_transactions(user.id))
        assert kinds == [TransactionKind.DEBIT, TransactionKind.REFUND, TransactionKind.TOP_UP]
        assert_consistent()


class TestExpireAndAudit:
    def test_expire_pending_only_touches_old_rows(self, db, make_user):
        user = make_user()
        ledger = LedgerService(db)
        old = ledger.record_pending_top_up(user.id, 30000, external_ref="pay_old")
        fresh = ledger.record_pending_top_up(user.id, 30000, external_ref="pay_fresh")
        db.execute(
            update(Transaction)
            .where(Transaction.id == old.id)
            .values(created_at=datetime.now(timezone.utc) - timedelta(hours=48))
        )
        db.commit()

        expired = ledger.expire_pending(datetime.now(timezone.utc) - timedelta(hours=24))

        assert expired == 1
        db.expire_all()
        assert ledger.get_by_external_ref("pay_old").status == TransactionStatus.CANCELED
        assert ledger.get_by_external_ref("pay_fresh").status == TransactionStatus.PENDING
        assert fresh.id != old.id

    def test_find_drift_reports_tampered_balance(self, db, make_user):
        user = make_user(balance=30000)
        other = make_user(balance=15000)
        db.execute(update(User).where(User.id == user.id).values(balance=99900))
        db.commit()

        drift = LedgerService(db).find_drift()

        assert [d.user_id for d in drift] == [user.id]
        assert drift[0].balance == 99900
        assert drift[0].ledger_sum == 30000
        assert LedgerService(db).audit_balance(other.id).consistent


class TestConcurrency:
    def test_concurrent_debits_never_overdraw(self, file_engine):
        """8 параллельных списаний по 75 ₽ при балансе 300 ₽: ровно 4 успешны."""
        factory = sessionmaker(bind=file_engine, autoflush=False)
        setup = factory()
        user = User(telegram_id="777", balance=0, has_access=True)
        setup.add(user)
        setup.commit()
        user_id = user.id
        LedgerService(setup).credit_balance(user_id, 30000, external_ref=None, idempotency_key="seed")
        setup.close()

        results: list[str] = []
        lock = threading.Lock()

        def worker():
            session = factory()
            try:
                LedgerService(session).debit_for_generation(user_id, 7500)
                outcome = "ok"
            except InsufficientBalanceError:
                outcome = "rejected"
            finally:
                session.close()
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 4
        assert results.count("rejected") == 4
        check = factory()
        try:
            ledger = LedgerService(check)
            assert ledger.get_balance(user_id) == 0
            assert ledger.find_drift() == []
        finally:
            check.close()

    def test_concurrent_duplicate_webhooks_credit_once(self, file_engine):
        factory = sessionmaker(bind=file_engine, autoflush=False)
        setup = factory()
        user = User(telegram_id="778", balance=0, has_access=True)
        setup.add(user)
        setup.commit()
        user_id = user.id
        LedgerService(setup).record_pending_top_up(user_id, 75000, external_ref="pay_race")
        setup.close()

        errors: list[Exception] = []

        def worker():
            session = factory()
            try:
                LedgerService(session).reconcile_payment(_event("pay_race"))
            except Exception as e:  # collected for the assertion below
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        check = factory()
        try:
            ledger = LedgerService(check)
            assert ledger.get_balance(user_id) == 75000
            assert ledger.find_drift() == []
        finally:
            check.close()

    def test_concurrent_same_key_credits_run_hook_once(self, file_engine):
        factory = sessionmaker(bind=file_engine, autoflush=False)
        setup = factory()
        user = User(telegram_id="779", balance=0, has_access=True)
        setup.add(user)
        setup.commit()
        user_id = user.id
        setup.close()

        applied: list[str] = []
        lock = threading.Lock()

        def on_applied(tx):
            with lock:
                applied.append(tx.id)

        def worker():
            session = factory()
            try:
                LedgerService(session).credit_balance(
                    user_id, 150000, external_ref=None, idempotency_key="manual:invoice-17", on_applied=on_applied
                )
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(applied) == 1
        check = factory()
        try:
            assert LedgerService(check).get_balance(user_id) == 150000
        finally:
            check.close()


class TestCreditHook:
    def test_hook_runs_only_when_credit_is_applied(self, db, make_user):
        user = make_user()
        calls = []
        ledger = LedgerService(db)

        first = ledger.credit_balance(user.id, 30000, None, "manual:a", on_applied=calls.append)
        ledger.credit_balance(user.id, 30000, None, "manual:a", on_applied=calls.append)

        assert [tx.id for tx in calls] == [first.id]

    def test_hook_failure_rolls_back_credit(self, db, make_user, assert_consistent):
        user = make_user()

        def broken(tx):
            raise RuntimeError("audit store down")

        with pytest.raises(RuntimeError):
            LedgerService(db).credit_balance(user.id, 30000, None, "manual:b", on_applied=broken)

        assert LedgerService(db).get_balance(user.id) == 0
        assert db.query(Transaction).filter(Transaction.idempotency_key == "manual:b").count() == 0
        assert_consistent()
