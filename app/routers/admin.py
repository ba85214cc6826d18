from beanie import PydanticObjectId
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.core.exceptions import NotFoundError
from app.deps import require_admin
from app.models.user import User
from app.services import credits as credits_service
from app.services import vacancies as vacancies_service

router = APIRouter()


class AdjustmentBody(BaseModel):
    credits: int
    note: str


@router.post("/vacancies/{vacancy_id}/approve")
async def admin_vacancy_approve(vacancy_id: str, user: User = Depends(require_admin)):
    """Admin: publish a submitted vacancy."""
    v = await vacancies_service.approve_vacancy(vacancy_id, admin_user_id=str(user.id))
    return vacancies_service.vacancy_snapshot(v)


@router.post("/employers/{employer_id}/adjustments")
async def admin_credit_adjustment(employer_id: str, body: AdjustmentBody, user: User = Depends(require_admin)):
    """Admin: add (positive) or deduct (negative) credits with a note."""
    if not PydanticObjectId.is_valid(employer_id):
        raise NotFoundError("Employer not found")
    tx, balance = await credits_service.adjust_credits(
        PydanticObjectId(employer_id), body.credits, body.note, admin_user_id=str(user.id)
    )
    return {"transaction_id": str(tx.id), "credits": tx.credits, "balance": balance.model_dump(mode="json")}
