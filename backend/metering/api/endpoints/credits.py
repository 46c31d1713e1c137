from fastapi import APIRouter, Depends
from typing import List

from metering.core.security import CurrentAccount, get_current_account
from metering.core.services import Services, get_services
from metering.schemas.credits import CreditBalanceResponse, CreditTransactionResponse

router = APIRouter()


@router.get("/credits", response_model=CreditBalanceResponse)
async def get_credits(
    account: CurrentAccount = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    summary = services.dispatcher.get_balance(account.id)
    return CreditBalanceResponse(
        balance=summary.balance,
        plan_key=summary.plan_key,
        next_reset_at=summary.next_reset_at,
    )


@router.get("/credits/transactions", response_model=List[CreditTransactionResponse])
async def list_credit_transactions(
    limit: int = 20,
    account: CurrentAccount = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    services.ledger.ensure_account(account.id)
    return services.ledger.list_transactions(account.id, limit=limit)
