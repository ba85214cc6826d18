"""Upsell eligibility per repeat_mode.

Pure module: takes (products, vacancy, transactions, now) and returns
decisions. The boost checkout and the boost-options endpoint both read from
here so the rules live in one place.

    once       purchasable until owned (selected, included in package, or bought before)
    unlimited  always purchasable
    renewable  always purchasable; latest purchase + duration_days is the current expiry
    until_max  closing-date extension inside [min_date, max_date]
"""

from datetime import date, datetime, timedelta
from typing import Iterable

from pydantic import BaseModel

from app.core.config import get_settings

BOOST_OPTION = "boost-option"
ADD_VACANCY = "add-vacancy"

REASON_NOT_BOOST_OPTION = "not_boost_option"
REASON_ALREADY_OWNED = "already_owned"
REASON_EXTENSION_UNAVAILABLE = "extension_unavailable"
REASON_PREMIUM_PACKAGE = "premium_package"
REASON_NO_ROOM_TO_EXTEND = "no_room_to_extend"


class ExtensionWindow(BaseModel):
    min_date: date
    max_date: date

    def contains(self, day: date) -> bool:
        return self.min_date <= day <= self.max_date


class UpsellOption(BaseModel):
    product_id: str
    display_name: str
    credits: int
    repeat_mode: str
    sort_order: int = 0
    owned: bool = False
    included: bool = False
    expires_at: datetime | None = None
    expiry_label: str | None = None
    min_date: date | None = None
    max_date: date | None = None
    required: bool = False


class UpsellDecision(BaseModel):
    product_id: str
    eligible: bool
    reason: str | None = None
    option: UpsellOption | None = None
    window: ExtensionWindow | None = None


def as_day(value: datetime | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


def find_package(products: Iterable, vacancy):
    if not vacancy.package_id:
        return None
    for product in products:
        if str(product.id) == vacancy.package_id:
            return product
    return None


def package_base_duration(package) -> int:
    if package is None or not package.duration_days:
        return get_settings().default_package_duration_days
    return package.duration_days


def is_premium(package) -> bool:
    """Premium packages already run for the maximum period and cannot be extended."""
    return package is not None and package_base_duration(package) >= get_settings().premium_duration_days


def is_boost_option(product) -> bool:
    return product.type == "upsell" and product.is_active and BOOST_OPTION in product.availability


def _vacancy_transactions(vacancy, transactions: Iterable) -> list:
    vacancy_id = str(vacancy.id)
    return [tx for tx in transactions if tx.vacancy_id == vacancy_id and tx.status != "failed"]


def owned_product_ids(vacancy, package, transactions: Iterable) -> set[str]:
    owned = set(vacancy.selected_upsells)
    if package is not None:
        owned.update(package.included_upsells)
    for tx in _vacancy_transactions(vacancy, transactions):
        owned.update(tx.product_ids)
    return owned


def latest_purchase(product_id: str, transactions: Iterable):
    """Most recent transaction referencing the product, or None."""
    relevant = [tx for tx in transactions if product_id in tx.product_ids]
    return max(relevant, key=lambda tx: tx.created_at, default=None)


def _extension(vacancy, package, product, today: date) -> tuple[ExtensionWindow | None, str | None]:
    published = as_day(vacancy.first_published_at)
    if published is None:
        return None, REASON_EXTENSION_UNAVAILABLE
    if is_premium(package):
        return None, REASON_PREMIUM_PACKAGE
    min_date = today
    closing = as_day(vacancy.closing_date)
    if closing is not None:
        min_date = max(today, closing + timedelta(days=1))
    max_date = published + timedelta(days=get_settings().extension_max_days)
    if product is not None and product.max_value:
        max_date = min(max_date, published + timedelta(days=product.max_value))
    if max_date <= min_date:
        return None, REASON_NO_ROOM_TO_EXTEND
    return ExtensionWindow(min_date=min_date, max_date=max_date), None


def extension_window(vacancy, package, product=None, now: datetime | None = None) -> ExtensionWindow | None:
    """Selectable closing dates for an extension, or None when the vacancy cannot be extended."""
    now = now or datetime.utcnow()
    window, _ = _extension(vacancy, package, product, now.date())
    return window


def evaluate_upsell(product, vacancy, package, transactions: Iterable, now: datetime | None = None) -> UpsellDecision:
    now = now or datetime.utcnow()
    product_id = str(product.id)
    if not is_boost_option(product):
        return UpsellDecision(product_id=product_id, eligible=False, reason=REASON_NOT_BOOST_OPTION)

    vacancy_txs = _vacancy_transactions(vacancy, transactions)
    owned = owned_product_ids(vacancy, package, vacancy_txs)
    included = package is not None and product_id in package.included_upsells
    option = UpsellOption(
        product_id=product_id,
        display_name=product.display_name,
        credits=product.credits,
        repeat_mode=product.repeat_mode,
        sort_order=product.sort_order,
        owned=product_id in owned,
        included=included,
    )

    mode = product.repeat_mode
    if mode == "once":
        if option.owned:
            return UpsellDecision(product_id=product_id, eligible=False, reason=REASON_ALREADY_OWNED)
    elif mode == "renewable":
        last = latest_purchase(product_id, vacancy_txs)
        if last is not None and product.duration_days:
            option.expires_at = last.created_at + timedelta(days=product.duration_days)
            option.expiry_label = f"Tot {option.expires_at:%d-%m-%Y}"
    elif mode == "until_max":
        window, reason = _extension(vacancy, package, product, now.date())
        if window is None:
            return UpsellDecision(product_id=product_id, eligible=False, reason=reason)
        option.min_date = window.min_date
        option.max_date = window.max_date
        option.required = vacancy.status == "verlopen"
        closing = as_day(vacancy.closing_date)
        if closing is not None:
            option.expiry_label = f"Tot {closing:%d-%m-%Y}"
        return UpsellDecision(product_id=product_id, eligible=True, option=option, window=window)
    return UpsellDecision(product_id=product_id, eligible=True, option=option)


def resolve_available_upsells(
    products: Iterable,
    vacancy,
    transactions: Iterable,
    now: datetime | None = None,
) -> list[UpsellOption]:
    """Boost options currently purchasable for the vacancy, ordered by sort_order."""
    now = now or datetime.utcnow()
    products = list(products)
    transactions = list(transactions)
    package = find_package(products, vacancy)
    options = []
    for product in products:
        if not is_boost_option(product):
            continue
        decision = evaluate_upsell(product, vacancy, package, transactions, now)
        if decision.eligible:
            options.append(decision.option)
    options.sort(key=lambda o: o.sort_order)
    return options
