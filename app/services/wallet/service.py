"""
WalletService: операции, которые видит пользователь чата: баланс, пополнение, генерация.

Thin orchestration over UserService, LedgerService and PaymentService;
money never moves here directly.
"""
import logging

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    AccessDeniedError,
    DuplicateRequestError,
    InvalidTopUpAmountError,
    UnknownUserError,
)
from app.models.generation import Generation
from app.models.transaction import Transaction
from app.models.user import User
from app.services.idempotency import IdempotencyStore
from app.services.ledger.service import LedgerService
from app.services.payments.service import PaymentService
from app.services.users.service import UserService
from app.utils.currency import format_rub, rub_to_minor

logger = logging.getLogger(__name__)


def plural_generations(n: int) -> str:
    """1 генерация, 2 генерации, 5 генераций."""
    if n % 10 == 1 and n % 100 != 11:
        word = "генерация"
    elif 2 <= n % 10 <= 4 and not 12 <= n % 100 <= 14:
        word = "генерации"
    else:
        word = "генераций"
    return f"{n} {word}"


class WalletService:
    def __init__(
        self,
        db: Session,
        payments: PaymentService | None = None,
        guard: IdempotencyStore | None = None,
        ledger: LedgerService | None = None,
    ):
        self.db = db
        self.users = UserService(db)
        self.ledger = ledger or LedgerService(db)
        self._payments = payments
        self._guard = guard

    @property
    def payments(self) -> PaymentService:
        if self._payments is None:
            self._payments = PaymentService(self.db, ledger=self.ledger)
        return self._payments

    @property
    def guard(self) -> IdempotencyStore:
        if self._guard is None:
            self._guard = IdempotencyStore()
        return self._guard

    def require_user(self, telegram_id: str) -> User:
        user = self.users.get_by_telegram_id(telegram_id)
        if user is None:
            raise UnknownUserError(str(telegram_id))
        return user

    def get_balance(self, telegram_id: str) -> int:
        return self.ledger.get_balance(self.require_user(telegram_id).id)

    def list_transactions(self, telegram_id: str, limit: int = 50) -> list[Transaction]:
        return self.ledger.list_transactions(self.require_user(telegram_id).id, limit=limit)

    def list_top_up_options(self) -> list[dict]:
        """Номиналы пополнения в порядке показа, с подписью «300 ₽ (2 генерации)»."""
        options = []
        for amount in settings.topup_amounts_list:
            amount_minor = rub_to_minor(amount)
            count = amount_minor // settings.generation_cost
            options.append({
                "amount": amount,
                "amount_minor": amount_minor,
                "label": f"{format_rub(amount_minor)} ({plural_generations(count)})",
            })
        return options

    def request_generation(
        self,
        telegram_id: str,
        idempotency_key: str | None = None,
        config: dict | None = None,
    ) -> Generation:
        """Списать стоимость генерации. Raises AccessDeniedError / InsufficientBalanceError."""
        user = self.require_user(telegram_id)
        if not user.can_use_service():
            raise AccessDeniedError(
                "Нет доступа к сервису" if not user.is_blocked else "Аккаунт заблокирован",
                {"user_id": user.id},
            )
        return self.ledger.debit_for_generation(
            user.id,
            settings.generation_cost,
            idempotency_key=idempotency_key,
            config=config,
        )

    def request_top_up(self, telegram_id: str, amount_rub: int, return_url: str | None = None) -> str:
        """
        Создать платёж на один из разрешённых номиналов.
        Returns confirmation_url; the pending transaction is committed before it is returned.
        """
        allowed = settings.topup_amounts_list
        if amount_rub not in allowed:
            raise InvalidTopUpAmountError(amount_rub, allowed)
        user = self.require_user(telegram_id)
        if user.is_blocked:
            raise AccessDeniedError("Аккаунт заблокирован", {"user_id": user.id})

        guard_key = f"topup:{user.id}:{amount_rub}"
        if not self.guard.check_and_set(guard_key, settings.topup_click_guard_seconds):
            raise DuplicateRequestError("Платёж уже создаётся, подождите", {"user_id": user.id})
        try:
            _, confirmation_url = self.payments.request_top_up(user, rub_to_minor(amount_rub), return_url)
        except Exception:
            self.guard.release(guard_key)
            raise
        return confirmation_url
