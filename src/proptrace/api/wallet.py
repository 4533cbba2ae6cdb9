"""FastAPI router exposing the caller's wallet."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from proptrace.api.auth import require_token
from proptrace.services.billing import BillingService
from proptrace.services.models import WalletSummary

router = APIRouter(prefix="/wallet", tags=["wallet"])


def get_service() -> BillingService:
    return BillingService()


@router.get("/", summary="Current balance and pricing", response_model=WalletSummary)
def get_wallet(user=Depends(require_token), service: BillingService = Depends(get_service)):
    return service.summary(user["caller_id"])
