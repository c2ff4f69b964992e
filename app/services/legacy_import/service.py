"""
LegacyImporter: одноразовый перенос data.json старого бота в реляционную модель.

Snapshot layout (amounts in rubles):
    companies       {id: {name, createdAt, balance}}
    users           {telegram_id: {name, companyId, balance, blocked, createdAt}}
    transactions    [{userId, amount, type, description, createdAt}]
    generations     [{userId, config, resultUrl, cost, createdAt}]
    accessRequests  [{userId, username, firstName, lastName, createdAt}]

The whole import is one database transaction: any inconsistency rolls everything back.
Legacy generations never had debit transactions, so one is synthesized per generation;
whatever still differs from the legacy balance is booked as an adjustment (or is fatal in strict mode).
"""
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ImportConsistencyError
from app.models.access_request import AccessRequest, AccessRequestStatus, Capability
from app.models.company import Company
from app.models.generation import Generation, GenerationStatus
from app.models.legacy_id_map import LegacyIdMap
from app.models.transaction import Transaction, TransactionKind, TransactionStatus
from app.models.user import User, UserRole
from app.services.audit.service import AuditService
from app.utils.currency import rub_to_minor

logger = logging.getLogger(__name__)

LEGACY_TYPE_MAP = {
    "topup": TransactionKind.TOP_UP,
    "debit": TransactionKind.DEBIT,
    "generation": TransactionKind.DEBIT,
    "charge": TransactionKind.DEBIT,
    "refund": TransactionKind.REFUND,
}


@dataclass
class ImportReport:
    companies: int = 0
    users: int = 0
    transactions: int = 0
    generations: int = 0
    access_requests: int = 0
    user_stubs: int = 0
    adjustments: int = 0
    dry_run: bool = False
    renamed_to: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _parse_ts(value: Any) -> datetime:
    """ISO-8601 (JS toISOString) or epoch millis -> aware UTC datetime. Missing -> now."""
    if value in (None, ""):
        return datetime.now(timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise ImportConsistencyError(f"invalid timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _to_minor(value: Any, what: str) -> int:
    try:
        return rub_to_minor(value if value is not None else 0)
    except ValueError as e:
        raise ImportConsistencyError(f"invalid amount in {what}: {value!r}") from e


class LegacyImporter:
    def __init__(
        self,
        db: Session,
        strict: bool = False,
        default_generation_cost_rub: int | None = None,
    ):
        self.db = db
        self.strict = strict
        self.default_generation_cost = rub_to_minor(
            default_generation_cost_rub
            if default_generation_cost_rub is not None
            else settings.legacy_default_generation_cost_rub
        )
        self.audit = AuditService(db)
        self._companies: dict[str, str] = {}
        self._users: dict[str, User] = {}
        self._ledger_sums: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, path: str | Path | None = None, dry_run: bool = False) -> ImportReport | None:
        """Load, import and (unless dry run) rename the snapshot. Missing file -> None."""
        snapshot = Path(path or settings.legacy_snapshot_path)
        if not snapshot.exists():
            logger.info("legacy_snapshot_missing", extra={"path": str(snapshot)})
            return None
        data = self.load(snapshot)
        report = self.import_snapshot(data, dry_run=dry_run)
        if not dry_run:
            report.renamed_to = str(self.archive(snapshot))
        return report

    @staticmethod
    def load(path: Path) -> dict[str, Any]:
        try:
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ImportConsistencyError(f"snapshot is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ImportConsistencyError("snapshot root must be an object")
        return data

    @staticmethod
    def archive(path: Path) -> Path:
        """data.json -> data.json.imported-<UTC timestamp>; never overwrites."""
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        target = path.with_name(f"{path.name}.imported-{stamp}")
        n = 1
        while target.exists():
            target = path.with_name(f"{path.name}.imported-{stamp}-{n}")
            n += 1
        path.rename(target)
        logger.info("legacy_snapshot_archived", extra={"path": str(target)})
        return target

    def import_snapshot(self, data: dict[str, Any], dry_run: bool = False) -> ImportReport:
        report = ImportReport(dry_run=dry_run)
        try:
            self._import_companies(data.get("companies") or {}, report)
            self._import_users(data.get("users") or {}, report)
            self._import_history(
                data.get("transactions") or [],
                data.get("generations") or [],
                report,
            )
            self._reconcile_balances(data.get("users") or {}, report)
            self._import_access_requests(data.get("accessRequests") or [], report)
            self.audit.record(
                actor_type="importer",
                actor_id=None,
                action="legacy_import",
                entity_type="legacy_snapshot",
                entity_id=None,
                payload=report.as_dict(),
            )
            if dry_run:
                self.db.rollback()
            else:
                self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error("legacy_import_failed", extra={"error": str(e)})
            raise
        logger.info("legacy_import_done", extra={"counts": report.as_dict()})
        return report

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _import_companies(self, companies: dict[str, Any], report: ImportReport) -> None:
        if not isinstance(companies, dict):
            raise ImportConsistencyError("companies must be an object")
        for legacy_id, raw in companies.items():
            if not isinstance(raw, dict) or not raw.get("name"):
                raise ImportConsistencyError(f"malformed company {legacy_id!r}")
            self._ensure_unmapped("company", legacy_id)
            company = Company(name=raw["name"], is_active=True, created_at=_parse_ts(raw.get("createdAt")))
            self.db.add(company)
            self.db.flush()
            self._map("company", legacy_id, company.id)
            self._companies[str(legacy_id)] = company.id
            report.companies += 1

    def _import_users(self, users: dict[str, Any], report: ImportReport) -> None:
        if not isinstance(users, dict):
            raise ImportConsistencyError("users must be an object")
        admin_ids = settings.admin_telegram_ids_set
        for telegram_id, raw in users.items():
            telegram_id = str(telegram_id)
            if not isinstance(raw, dict):
                raise ImportConsistencyError(f"malformed user {telegram_id!r}")
            self._ensure_unmapped("user", telegram_id)
            self._ensure_new_telegram_id(telegram_id)

            company_id = None
            legacy_company = raw.get("companyId")
            if legacy_company not in (None, ""):
                company_id = self._companies.get(str(legacy_company))
                if company_id is None:
                    raise ImportConsistencyError(
                        f"user {telegram_id} references unknown company {legacy_company!r}"
                    )

            is_admin = telegram_id in admin_ids
            user = User(
                telegram_id=telegram_id,
                company_id=company_id,
                name=raw.get("name"),
                balance=0,
                role=UserRole.ADMIN if is_admin else UserRole.USER,
                has_access=True,  # the legacy bot only stored approved users
                is_blocked=bool(raw.get("blocked")),
                created_at=_parse_ts(raw.get("createdAt")),
            )
            self.db.add(user)
            self.db.flush()
            self._map("user", telegram_id, user.id)
            self._users[telegram_id] = user
            self._ledger_sums[telegram_id] = 0
            report.users += 1

    def _import_history(self, transactions: list, generations: list, report: ImportReport) -> None:
        if not isinstance(transactions, list) or not isinstance(generations, list):
            raise ImportConsistencyError("transactions and generations must be lists")
        entries = []
        for i, raw in enumerate(transactions):
            entries.append((_parse_ts(_field(raw, "createdAt", "transaction", i)), 0, i, raw))
        for i, raw in enumerate(generations):
            entries.append((_parse_ts(_field(raw, "createdAt", "generation", i)), 1, i, raw))
        entries.sort(key=lambda e: (e[0], e[1], e[2]))

        for created_at, source, index, raw in entries:
            if source == 0:
                self._import_transaction(index, raw, created_at)
                report.transactions += 1
            else:
                self._import_generation(index, raw, created_at)
                report.generations += 1

    def _import_transaction(self, index: int, raw: dict, created_at: datetime) -> None:
        legacy_id = str(raw.get("id", index))
        self._ensure_unmapped("transaction", legacy_id)
        user = self._user_for(raw.get("userId"), f"transaction {legacy_id}")
        kind = LEGACY_TYPE_MAP.get(str(raw.get("type") or "").lower(), TransactionKind.ADJUSTMENT)
        amount = _to_minor(raw.get("amount"), f"transaction {legacy_id}")
        if kind == TransactionKind.DEBIT:
            amount = -abs(amount)
        elif kind in (TransactionKind.TOP_UP, TransactionKind.REFUND):
            amount = abs(amount)

        tx = Transaction(
            user_id=user.id,
            kind=kind,
            amount=amount,
            status=TransactionStatus.SUCCEEDED,
            idempotency_key=f"legacy:transaction:{legacy_id}",
            description=raw.get("description"),
            created_at=created_at,
            reconciled_at=created_at,
        )
        self.db.add(tx)
        self.db.flush()
        self._map("transaction", legacy_id, tx.id)
        self._ledger_sums[user.telegram_id] += amount

    def _import_generation(self, index: int, raw: dict, created_at: datetime) -> None:
        legacy_id = str(raw.get("id", index))
        self._ensure_unmapped("generation", legacy_id)
        user = self._user_for(raw.get("userId"), f"generation {legacy_id}")
        cost = (
            _to_minor(raw["cost"], f"generation {legacy_id}")
            if raw.get("cost") not in (None, "", 0)
            else self.default_generation_cost
        )
        if cost <= 0:
            raise ImportConsistencyError(f"generation {legacy_id} has non-positive cost")

        debit = Transaction(
            user_id=user.id,
            kind=TransactionKind.DEBIT,
            amount=-cost,
            status=TransactionStatus.SUCCEEDED,
            idempotency_key=f"legacy:generation:{legacy_id}",
            description="legacy generation",
            created_at=created_at,
            reconciled_at=created_at,
        )
        self.db.add(debit)
        self.db.flush()
        generation = Generation(
            user_id=user.id,
            transaction_id=debit.id,
            cost=cost,
            status=GenerationStatus.COMPLETED,
            config=raw.get("config"),
            result_url=raw.get("resultUrl"),
            requested_at=created_at,
            completed_at=created_at,
        )
        self.db.add(generation)
        self.db.flush()
        self._map("generation", legacy_id, generation.id)
        self._ledger_sums[user.telegram_id] -= cost

    def _reconcile_balances(self, users: dict[str, Any], report: ImportReport) -> None:
        for telegram_id, user in self._users.items():
            legacy_balance = _to_minor(users[telegram_id].get("balance"), f"user {telegram_id} balance")
            if legacy_balance < 0:
                raise ImportConsistencyError(f"user {telegram_id} has negative balance")
            ledger_sum = self._ledger_sums[telegram_id]
            diff = legacy_balance - ledger_sum
            if diff:
                if self.strict:
                    raise ImportConsistencyError(
                        f"user {telegram_id}: ledger sum {ledger_sum} != legacy balance {legacy_balance}",
                        {"telegram_id": telegram_id, "ledger_sum": ledger_sum, "balance": legacy_balance},
                    )
                self.db.add(Transaction(
                    user_id=user.id,
                    kind=TransactionKind.ADJUSTMENT,
                    amount=diff,
                    status=TransactionStatus.SUCCEEDED,
                    idempotency_key=f"legacy:adjustment:{telegram_id}",
                    description="legacy balance reconciliation",
                ))
                report.adjustments += 1
                logger.info(
                    "legacy_balance_adjusted",
                    extra={"telegram_id": telegram_id, "amount": diff, "balance": legacy_balance},
                )
            # bulk migration: the balance is set once, equal to the imported ledger
            user.balance = legacy_balance
            self.db.add(user)
        self.db.flush()

    def _import_access_requests(self, requests: list, report: ImportReport) -> None:
        if not isinstance(requests, list):
            raise ImportConsistencyError("accessRequests must be a list")
        seen: set[str] = set()
        for i, raw in enumerate(requests):
            if not isinstance(raw, dict) or raw.get("userId") in (None, ""):
                raise ImportConsistencyError(f"malformed access request #{i}")
            telegram_id = str(raw["userId"])
            if telegram_id in seen:
                continue  # one request per user, as in the legacy store
            seen.add(telegram_id)
            self._ensure_unmapped("access_request", telegram_id)
            user = self._users.get(telegram_id)
            if user is None:
                self._ensure_unmapped("user", telegram_id)
                self._ensure_new_telegram_id(telegram_id)
                full_name = " ".join(p for p in (raw.get("firstName"), raw.get("lastName")) if p) or None
                user = User(
                    telegram_id=telegram_id,
                    name=full_name,
                    username=raw.get("username"),
                    balance=0,
                    role=UserRole.USER,
                    has_access=False,
                )
                self.db.add(user)
                self.db.flush()
                self._map("user", telegram_id, user.id)
                self._users[telegram_id] = user
                report.user_stubs += 1

            request = AccessRequest(
                user_id=user.id,
                capability=Capability.ACCESS,
                status=AccessRequestStatus.PENDING,
                created_at=_parse_ts(raw.get("createdAt")),
            )
            self.db.add(request)
            self.db.flush()
            self._map("access_request", telegram_id, request.id)
            report.access_requests += 1

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _user_for(self, legacy_user_id: Any, what: str) -> User:
        user = self._users.get(str(legacy_user_id))
        if user is None:
            raise ImportConsistencyError(f"{what} references unknown user {legacy_user_id!r}")
        return user

    def _is_mapped(self, entity_type: str, legacy_id: str) -> bool:
        return (
            self.db.query(LegacyIdMap.id)
            .filter(LegacyIdMap.entity_type == entity_type, LegacyIdMap.legacy_id == str(legacy_id))
            .first()
            is not None
        )

    def _ensure_unmapped(self, entity_type: str, legacy_id: str) -> None:
        if self._is_mapped(entity_type, legacy_id):
            raise ImportConsistencyError(
                f"{entity_type} {legacy_id} was already imported",
                {"entity_type": entity_type, "legacy_id": legacy_id},
            )

    def _ensure_new_telegram_id(self, telegram_id: str) -> None:
        if self.db.query(User.id).filter(User.telegram_id == telegram_id).first() is not None:
            raise ImportConsistencyError(
                f"telegram id {telegram_id} already exists",
                {"telegram_id": telegram_id},
            )

    def _map(self, entity_type: str, legacy_id: str, new_id: str) -> None:
        self.db.add(LegacyIdMap(entity_type=entity_type, legacy_id=str(legacy_id), new_id=new_id))
        self.db.flush()


def _field(raw: Any, name: str, what: str, index: int) -> Any:
    if not isinstance(raw, dict):
        raise ImportConsistencyError(f"malformed {what} #{index}")
    return raw.get(name)
