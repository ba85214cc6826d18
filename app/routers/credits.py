from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.pagination import Page, page_payload, paginate
from app.deps import get_current_employer, get_current_user
from app.models.employer import Employer
from app.models.transaction import Transaction
from app.models.user import User
from app.services import credits as credits_service
from app.services import ledger

router = APIRouter()


class InvoiceDetails(BaseModel):
    contact_name: str = ""
    email: str = ""
    street: str = ""
    postal_code: str = ""
    city: str = ""
    reference: str = ""


class CheckoutBody(BaseModel):
    product_id: str
    context: Literal["dashboard", "vacancy", "boost", "renew", "transactions"] = "dashboard"
    invoice_details: InvoiceDetails = Field(default_factory=InvoiceDetails)


def _transaction_out(tx: Transaction) -> dict:
    return {
        "id": str(tx.id),
        "type": tx.type,
        "status": tx.status,
        "credits": tx.credits,
        "product_ids": tx.product_ids,
        "context": tx.context,
        "vacancy_id": tx.vacancy_id,
        "money_amount": tx.money_amount,
        "expires_at": tx.expires_at.isoformat() if tx.expires_at else None,
        "invoice_reference": tx.invoice_reference,
        "created_at": tx.created_at.isoformat(),
    }


@router.get("/balance")
async def credits_balance(employer: Employer = Depends(get_current_employer)):
    """Return current credit balance."""
    balance = await credits_service.get_balance(employer.id)
    return {"balance": balance.model_dump(mode="json")}


@router.get("/ledger")
async def credits_ledger(
    employer: Employer = Depends(get_current_employer),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for the employer (newest first)."""
    limit, offset = paginate(limit, offset)
    query = Transaction.find(Transaction.employer_id == employer.id)
    total = await query.count()
    entries = await query.sort(-Transaction.created_at).skip(offset).limit(limit).to_list()
    page = Page[dict](items=[_transaction_out(e) for e in entries], limit=limit, offset=offset, total=total)
    return page_payload(page, key="entries")


@router.get("/orders")
async def credits_orders(employer: Employer = Depends(get_current_employer)):
    """Purchases and spends with the credits overview shown above the order list."""
    transactions = await credits_service.list_transactions(employer.id)
    balance = ledger.compute_balance(transactions, employer_id=str(employer.id))
    visible = [tx for tx in transactions if tx.type in ("purchase", "spend", "refund") and tx.status != "failed"]
    return {
        "orders": [_transaction_out(tx) for tx in reversed(visible)],
        "overview": balance.model_dump(mode="json"),
        "price_display_mode": ledger.price_display_mode(balance.total_purchased),
    }


@router.post("/checkout")
async def credits_checkout(
    body: CheckoutBody,
    user: User = Depends(get_current_user),
    employer: Employer = Depends(get_current_employer),
):
    """Buy a credit bundle. Credits are available right away; invoicing happens later."""
    tx, balance = await credits_service.purchase_credits(
        employer.id,
        body.product_id,
        body.context,
        body.invoice_details.model_dump(),
        user_id=str(user.id),
    )
    return {"transaction": _transaction_out(tx), "balance": balance.model_dump(mode="json")}
