from typing import Literal

from beanie.operators import In
from fastapi import APIRouter, Depends, Query

from app.deps import get_current_user
from app.models.product import Product
from app.models.user import User

router = APIRouter()


def product_out(p: Product) -> dict:
    return {
        "id": str(p.id),
        "display_name": p.display_name,
        "slug": p.slug,
        "type": p.type,
        "credits": p.credits,
        "price": p.price,
        "repeat_mode": p.repeat_mode,
        "duration_days": p.duration_days,
        "max_value": p.max_value,
        "availability": p.availability,
        "included_upsells": p.included_upsells,
        "validity_months": p.validity_months,
        "sort_order": p.sort_order,
    }


@router.get("")
async def products_list(
    user: User = Depends(get_current_user),
    type: Literal["vacancy_package", "credit_bundle", "upsell"] | None = Query(None),
    availability: str | None = Query(None, description="add-vacancy | boost-option"),
):
    """Active catalog entries, optionally filtered by type and where they are offered."""
    query = Product.find(Product.is_active == True)  # noqa: E712
    if type:
        query = query.find(Product.type == type)
    if availability:
        query = query.find(In(Product.availability, [availability]))
    items = await query.sort(+Product.sort_order).to_list()
    return {"products": [product_out(p) for p in items]}
