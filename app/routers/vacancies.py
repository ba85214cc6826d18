from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from app.core.security import normalize_idempotency_key
from app.deps import get_current_employer, get_current_user
from app.models.employer import Employer
from app.models.user import User
from app.services import boost as boost_service
from app.services import vacancies as vacancies_service

router = APIRouter()


class VacancyBody(BaseModel):
    title: str | None = None
    intro_txt: str | None = None
    description: str | None = None
    location: str | None = None
    input_type: Literal["self_service", "we_do_it_for_you"] | None = None
    apply_url: str | None = None
    application_email: str | None = None
    show_apply_form: bool | None = None
    package_id: str | None = None
    selected_upsells: list[str] | None = None


class BoostBody(BaseModel):
    upsell_ids: list[str] = Field(default_factory=list)
    new_closing_date: date | None = None


@router.get("")
async def vacancies_list(
    employer: Employer = Depends(get_current_employer),
    status: str | None = Query(None),
):
    items = await vacancies_service.list_vacancies(employer.id, status=status)
    return {"vacancies": [vacancies_service.vacancy_snapshot(v) for v in items]}


@router.post("")
async def vacancy_create(
    body: VacancyBody,
    user: User = Depends(get_current_user),
    employer: Employer = Depends(get_current_employer),
):
    v = await vacancies_service.create_vacancy(employer.id, body.model_dump(exclude_none=True), user_id=str(user.id))
    return vacancies_service.vacancy_snapshot(v)


@router.get("/{vacancy_id}")
async def vacancy_get(vacancy_id: str, employer: Employer = Depends(get_current_employer)):
    v = await vacancies_service.get_owned_vacancy(vacancy_id, employer.id)
    return vacancies_service.vacancy_snapshot(v)


@router.patch("/{vacancy_id}")
async def vacancy_update(
    vacancy_id: str,
    body: VacancyBody,
    user: User = Depends(get_current_user),
    employer: Employer = Depends(get_current_employer),
):
    v = await vacancies_service.update_vacancy(
        vacancy_id, employer.id, body.model_dump(exclude_unset=True), user_id=str(user.id)
    )
    return vacancies_service.vacancy_snapshot(v)


@router.post("/{vacancy_id}/submit")
async def vacancy_submit(
    vacancy_id: str,
    user: User = Depends(get_current_user),
    employer: Employer = Depends(get_current_employer),
):
    """Pay package + upsells with credits and send the vacancy for approval."""
    out = await vacancies_service.submit_vacancy(vacancy_id, employer.id, user_id=str(user.id))
    out["balance"] = out["balance"].model_dump(mode="json")
    return out


@router.post("/{vacancy_id}/depublish")
async def vacancy_depublish(
    vacancy_id: str,
    user: User = Depends(get_current_user),
    employer: Employer = Depends(get_current_employer),
):
    v = await vacancies_service.depublish_vacancy(vacancy_id, employer.id, user_id=str(user.id))
    return vacancies_service.vacancy_snapshot(v)


@router.post("/{vacancy_id}/publish")
async def vacancy_publish(
    vacancy_id: str,
    user: User = Depends(get_current_user),
    employer: Employer = Depends(get_current_employer),
):
    """Republish a depublished vacancy whose closing date has not passed."""
    v = await vacancies_service.republish_vacancy(vacancy_id, employer.id, user_id=str(user.id))
    return vacancies_service.vacancy_snapshot(v)


@router.post("/{vacancy_id}/sync")
async def vacancy_sync(vacancy_id: str, employer: Employer = Depends(get_current_employer)):
    v = await vacancies_service.request_sync(vacancy_id, employer.id)
    return {"id": str(v.id), "needs_sync": True}


@router.get("/{vacancy_id}/boost-options")
async def vacancy_boost_options(vacancy_id: str, employer: Employer = Depends(get_current_employer)):
    return await boost_service.boost_options(employer.id, vacancy_id)


@router.post("/{vacancy_id}/boost")
async def vacancy_boost(
    vacancy_id: str,
    body: BoostBody,
    user: User = Depends(get_current_user),
    employer: Employer = Depends(get_current_employer),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Buy upsells and/or a closing-date extension in one checkout. Optional Idempotency-Key."""
    result = await boost_service.boost_vacancy(
        employer.id,
        vacancy_id,
        body.upsell_ids,
        new_closing_date=body.new_closing_date,
        user_id=str(user.id),
        idempotency_key=normalize_idempotency_key(idempotency_key),
    )
    return result.model_dump(mode="json")
