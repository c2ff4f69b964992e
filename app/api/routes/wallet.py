"""
Front-end boundary for the chat bot: registration, balance, history, top-up, generation.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.models.generation import FailureSource, GenerationStatus
from app.schemas.wallet import (
    AccessRequestIn,
    AccessRequestStatusOut,
    BalanceOut,
    GenerationIn,
    GenerationOut,
    RegisterIn,
    TopUpIn,
    TopUpOptionOut,
    TopUpOut,
    TransactionOut,
    UserOut,
)
from app.services.access_requests.service import AccessRequestService
from app.services.wallet.service import WalletService
from app.utils.currency import format_rub
from app.workers.tasks.generation import run_generation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wallet", tags=["wallet"])


def get_wallet_service(db: Session = Depends(get_db)) -> WalletService:
    return WalletService(db)


@router.get("/top-up-options", response_model=list[TopUpOptionOut])
def top_up_options(wallet: WalletService = Depends(get_wallet_service)):
    return wallet.list_top_up_options()


@router.post("/users", response_model=UserOut)
def register(payload: RegisterIn, wallet: WalletService = Depends(get_wallet_service)):
    """First contact: creates the user (zero balance) or refreshes name/username."""
    return wallet.users.get_or_create_user(payload.telegram_id, name=payload.name, username=payload.username)


@router.post("/{telegram_id}/access-requests", response_model=AccessRequestStatusOut)
def submit_access_request(
    telegram_id: str,
    payload: AccessRequestIn,
    wallet: WalletService = Depends(get_wallet_service),
):
    user = wallet.require_user(telegram_id)
    return AccessRequestService(wallet.db).submit(
        user.id, capability=payload.capability, company_id=payload.company_id, comment=payload.comment
    )


@router.get("/{telegram_id}/balance", response_model=BalanceOut)
def balance(telegram_id: str, wallet: WalletService = Depends(get_wallet_service)):
    value = wallet.get_balance(telegram_id)
    return BalanceOut(telegram_id=telegram_id, balance=value, balance_display=format_rub(value))


@router.get("/{telegram_id}/transactions", response_model=list[TransactionOut])
def transactions(
    telegram_id: str,
    limit: int = Query(default=20, ge=1, le=200),
    wallet: WalletService = Depends(get_wallet_service),
):
    return wallet.list_transactions(telegram_id, limit=limit)


@router.post("/{telegram_id}/top-ups", response_model=TopUpOut)
def top_up(telegram_id: str, payload: TopUpIn, wallet: WalletService = Depends(get_wallet_service)):
    """The pending transaction is committed before the confirmation URL is returned."""
    url = wallet.request_top_up(telegram_id, payload.amount, return_url=payload.return_url)
    return TopUpOut(confirmation_url=url)


@router.post("/{telegram_id}/generations", response_model=GenerationOut, status_code=202)
def request_generation(
    telegram_id: str,
    payload: GenerationIn,
    wallet: WalletService = Depends(get_wallet_service),
):
    generation = wallet.request_generation(
        telegram_id, idempotency_key=payload.idempotency_key, config=payload.config
    )
    if generation.status != GenerationStatus.REQUESTED:
        return generation
    try:
        run_generation.delay(generation.id, payload.input_image_path)
    except Exception as e:
        # Broker unavailable: the worker will never see this generation, refund now
        logger.exception("generation_enqueue_failed", extra={"generation_id": generation.id})
        wallet.ledger.complete_generation(
            generation.id, success=False, failure_source=FailureSource.PROVIDER, error=f"enqueue failed: {e}"
        )
        raise HTTPException(status_code=503, detail="Генерация временно недоступна, средства возвращены")
    return generation
