"""Boost checkout: validation, affordability, serialized debits, compensation."""

import asyncio
from datetime import date, datetime

import pytest
from beanie import PydanticObjectId

from app.core.exceptions import (
    EligibilityError,
    InsufficientCreditsError,
    StoreWriteError,
    ValidationFailedError,
)
from app.models.audit_log import AuditLog
from app.models.transaction import Transaction
from app.models.vacancy import Vacancy
from app.services import boost as boost_service
from app.services import credits as credits_service
from app.services import vacancies as vacancies_service

pytestmark = pytest.mark.asyncio

NOW = datetime(2026, 1, 15, 12, 0)


@pytest.fixture
def slow_vacancy_writes(monkeypatch):
    """Vacancy writes yield to the event loop first, so concurrent checkouts interleave."""
    write = vacancies_service.update_where

    async def slow(*args, **kwargs):
        await asyncio.sleep(0.01)
        return await write(*args, **kwargs)

    monkeypatch.setattr(vacancies_service, "update_where", slow)


async def test_boost_spends_and_updates_vacancy(employer, pid, grant, make_vacancy):
    await grant(20)
    vacancy = await make_vacancy()
    result = await boost_service.boost_vacancy(
        employer.id,
        str(vacancy.id),
        [pid("highlight"), pid("extension")],
        new_closing_date=date(2026, 3, 1),
        now=NOW,
    )
    assert result.credits_spent == 15
    assert result.balance.available == 5
    assert result.vacancy["closing_date"] == "2026-03-01"
    assert result.vacancy["selected_upsells"] == [pid("highlight")]
    assert "UITGELICHT" in result.vacancy["tags"]
    assert result.vacancy["needs_sync"] is True

    spends = await Transaction.find(Transaction.type == "spend").to_list()
    assert len(spends) == 1
    assert spends[0].status == "paid"
    assert spends[0].credits == 15
    assert spends[0].product_ids == [pid("highlight"), pid("extension")]
    assert spends[0].checkout_id == result.checkout_id

    stored = await Vacancy.get(vacancy.id)
    assert stored.applied_checkout_ids == [result.checkout_id]
    assert await AuditLog.find(AuditLog.event_type == "vacancy_boost").count() == 1


async def test_second_checkout_after_spend_is_unaffordable(employer, pid, grant, make_vacancy):
    await grant(20)
    first = await make_vacancy()
    second = await make_vacancy()
    result = await boost_service.boost_vacancy(
        employer.id, str(first.id), [pid("highlight"), pid("extension")], new_closing_date=date(2026, 3, 1), now=NOW
    )
    assert result.balance.available == 5
    with pytest.raises(InsufficientCreditsError) as exc:
        await boost_service.boost_vacancy(
            employer.id, str(second.id), [pid("extension")], new_closing_date=date(2026, 3, 1), now=NOW
        )
    assert exc.value.shortage == 5
    assert (await credits_service.get_balance(employer.id, NOW)).available == 5


async def test_concurrent_checkouts_never_overspend(employer, pid, grant, make_vacancy):
    await grant(20)
    first = await make_vacancy()
    second = await make_vacancy()
    results = await asyncio.gather(
        boost_service.boost_vacancy(
            employer.id, str(first.id), [pid("highlight"), pid("extension")], new_closing_date=date(2026, 3, 1), now=NOW
        ),
        boost_service.boost_vacancy(
            employer.id, str(second.id), [pid("extension")], new_closing_date=date(2026, 3, 1), now=NOW
        ),
        return_exceptions=True,
    )
    succeeded = [r for r in results if isinstance(r, boost_service.BoostResult)]
    rejected = [r for r in results if isinstance(r, InsufficientCreditsError)]
    assert len(succeeded) == 1
    assert len(rejected) == 1
    balance = await credits_service.get_balance(employer.id, NOW)
    assert balance.available >= 0
    assert balance.available == 20 - succeeded[0].credits_spent


async def test_stale_wallet_version_loses(employer, grant):
    await grant(20)
    winner = await credits_service.load_state(employer.id, NOW)
    loser = await credits_service.load_state(employer.id, NOW)
    assert await credits_service.stage_debit(
        winner, Transaction(employer_id=employer.id, type="spend", credits=15, created_at=NOW)
    )
    stale = Transaction(employer_id=employer.id, type="spend", credits=10, created_at=NOW)
    assert not await credits_service.stage_debit(loser, stale)
    assert (await Transaction.get(stale.id)).status == "failed"
    assert (await credits_service.get_balance(employer.id, NOW)).available == 5


async def test_debit_revalidates_after_losing_race(employer, grant):
    await grant(20)
    calls = []

    async def build(state):
        calls.append(state.balance.available)
        if len(calls) == 1:
            # another checkout commits between our read and our claim
            rival = await credits_service.load_state(employer.id, NOW)
            await credits_service.stage_debit(
                rival, Transaction(employer_id=employer.id, type="spend", credits=15, created_at=NOW)
            )
        if state.balance.available < 10:
            raise InsufficientCreditsError(required=10, available=state.balance.available)
        return Transaction(employer_id=employer.id, type="spend", credits=10, created_at=NOW)

    with pytest.raises(InsufficientCreditsError):
        await credits_service.debit(employer.id, build, NOW)
    assert calls == [20, 5]
    assert (await credits_service.get_balance(employer.id, NOW)).available == 5


async def test_once_upsell_cannot_be_bought_twice(employer, pid, grant, make_vacancy):
    await grant(20)
    vacancy = await make_vacancy()
    await boost_service.boost_vacancy(employer.id, str(vacancy.id), [pid("highlight")], now=NOW)
    with pytest.raises(EligibilityError) as exc:
        await boost_service.boost_vacancy(employer.id, str(vacancy.id), [pid("highlight")], now=NOW)
    assert exc.value.reason == "already_owned"
    assert exc.value.product_id == pid("highlight")
    assert (await credits_service.get_balance(employer.id, NOW)).available == 15


async def test_expired_vacancy_requires_extension(employer, pid, grant, make_vacancy):
    await grant(20)
    vacancy = await make_vacancy(status="verlopen", closing_date=datetime(2026, 1, 10))
    with pytest.raises(EligibilityError) as exc:
        await boost_service.boost_vacancy(employer.id, str(vacancy.id), [pid("top")], now=NOW)
    assert exc.value.reason == "extension_required"
    assert await Transaction.find(Transaction.type == "spend").count() == 0


async def test_extension_republishes_expired_vacancy(employer, pid, grant, make_vacancy):
    await grant(20)
    vacancy = await make_vacancy(status="verlopen", closing_date=datetime(2026, 1, 10))
    result = await boost_service.boost_vacancy(
        employer.id, str(vacancy.id), [pid("extension")], new_closing_date=date(2026, 2, 15), now=NOW
    )
    assert result.vacancy["status"] == "gepubliceerd"
    assert result.vacancy["last_published_at"] == NOW.isoformat()
    assert result.vacancy["closing_date"] == "2026-02-15"
    # extension is not an upsell the vacancy keeps
    assert result.vacancy["selected_upsells"] == []


async def test_closing_date_outside_window(employer, pid, grant, make_vacancy):
    await grant(20)
    vacancy = await make_vacancy()
    with pytest.raises(EligibilityError) as exc:
        await boost_service.boost_vacancy(
            employer.id, str(vacancy.id), [pid("extension")], new_closing_date=date(2027, 1, 2), now=NOW
        )
    assert exc.value.reason == "date_out_of_range"
    assert exc.value.details["max_date"] == "2027-01-01"
    result = await boost_service.boost_vacancy(
        employer.id, str(vacancy.id), [pid("extension")], new_closing_date=date(2027, 1, 1), now=NOW
    )
    assert result.vacancy["closing_date"] == "2027-01-01"


@pytest.mark.parametrize(
    "keys,closing",
    [
        ([], None),
        (["top", "top"], None),
        (["top"], date(2026, 3, 1)),
        (["extension"], None),
    ],
)
async def test_invalid_selection(employer, pid, grant, make_vacancy, keys, closing):
    await grant(20)
    vacancy = await make_vacancy()
    with pytest.raises(ValidationFailedError):
        await boost_service.boost_vacancy(
            employer.id, str(vacancy.id), [pid(k) for k in keys], new_closing_date=closing, now=NOW
        )


async def test_unknown_product(employer, grant, make_vacancy):
    await grant(20)
    vacancy = await make_vacancy()
    with pytest.raises(ValidationFailedError):
        await boost_service.boost_vacancy(employer.id, str(vacancy.id), ["nope"], now=NOW)


async def test_concept_vacancy_not_boostable(employer, pid, grant, make_vacancy):
    await grant(20)
    vacancy = await make_vacancy(status="concept")
    with pytest.raises(EligibilityError) as exc:
        await boost_service.boost_vacancy(employer.id, str(vacancy.id), [pid("top")], now=NOW)
    assert exc.value.reason == "vacancy_status"


async def test_idempotency_key_replays(employer, pid, grant, make_vacancy):
    await grant(20)
    vacancy = await make_vacancy()
    first = await boost_service.boost_vacancy(
        employer.id, str(vacancy.id), [pid("top")], idempotency_key="boost-1", now=NOW
    )
    again = await boost_service.boost_vacancy(
        employer.id, str(vacancy.id), [pid("top")], idempotency_key="boost-1", now=NOW
    )
    assert again.replayed
    assert again.transaction_id == first.transaction_id
    assert await Transaction.find(Transaction.type == "spend").count() == 1
    assert again.balance.available == 15


async def test_vacancy_write_failure_releases_credits(employer, pid, grant, make_vacancy, monkeypatch):
    await grant(20)
    vacancy = await make_vacancy()

    async def broken_write(*args, **kwargs):
        raise RuntimeError("primary stepped down")

    monkeypatch.setattr(vacancies_service, "update_where", broken_write)
    with pytest.raises(StoreWriteError) as exc:
        await boost_service.boost_vacancy(employer.id, str(vacancy.id), [pid("top")], now=NOW)
    assert exc.value.details["compensated"] is True
    spend = await Transaction.find_one(Transaction.type == "spend")
    assert spend.status == "failed"
    assert (await credits_service.get_balance(employer.id, NOW)).available == 20


async def test_boost_options(employer, pid, grant, make_vacancy):
    await grant(20)
    vacancy = await make_vacancy(status="verlopen", closing_date=datetime(2026, 1, 10))
    out = await boost_service.boost_options(employer.id, str(vacancy.id), now=NOW)
    assert out["extension_required"] is True
    assert out["price_display_mode"] == "credits"
    assert out["balance"]["available"] == 20
    ext = next(o for o in out["options"] if o["product_id"] == pid("extension"))
    assert ext["required"] is True
    assert ext["min_date"] == "2026-01-15"


async def test_concurrent_boosts_on_one_vacancy_both_land(employer, pid, grant, make_vacancy, slow_vacancy_writes):
    await grant(20)
    vacancy = await make_vacancy()
    first, second = await asyncio.gather(
        boost_service.boost_vacancy(employer.id, str(vacancy.id), [pid("highlight")], now=NOW),
        boost_service.boost_vacancy(employer.id, str(vacancy.id), [pid("top")], now=NOW),
    )
    stored = await Vacancy.get(vacancy.id)
    assert set(stored.selected_upsells) == {pid("highlight"), pid("top")}
    assert "UITGELICHT" in stored.tags
    assert sorted(stored.applied_checkout_ids) == sorted([first.checkout_id, second.checkout_id])
    spends = await Transaction.find(Transaction.type == "spend").to_list()
    assert [s.status for s in spends] == ["paid", "paid"]
    assert (await credits_service.get_balance(employer.id, NOW)).available == 10


async def test_same_idempotency_key_in_flight_charges_once(employer, pid, grant, make_vacancy, monkeypatch):
    await grant(20)
    vacancy = await make_vacancy()
    lookup = credits_service.find_by_idempotency_key

    async def lookup_then_yield(*args, **kwargs):
        found = await lookup(*args, **kwargs)
        await asyncio.sleep(0)
        return found

    monkeypatch.setattr(credits_service, "find_by_idempotency_key", lookup_then_yield)
    results = await asyncio.gather(
        boost_service.boost_vacancy(employer.id, str(vacancy.id), [pid("top")], idempotency_key="k1", now=NOW),
        boost_service.boost_vacancy(employer.id, str(vacancy.id), [pid("top")], idempotency_key="k1", now=NOW),
    )
    assert sorted(r.replayed for r in results) == [False, True]
    assert results[0].transaction_id == results[1].transaction_id
    live = await Transaction.find(Transaction.type == "spend", Transaction.status != "failed").to_list()
    assert len(live) == 1
    assert (await credits_service.get_balance(employer.id, NOW)).available == 15


async def test_idempotency_key_reused_for_other_vacancy(employer, pid, grant, make_vacancy):
    await grant(20)
    first = await make_vacancy()
    second = await make_vacancy()
    await boost_service.boost_vacancy(employer.id, str(first.id), [pid("top")], idempotency_key="k1", now=NOW)
    with pytest.raises(ValidationFailedError) as exc:
        await boost_service.boost_vacancy(employer.id, str(second.id), [pid("top")], idempotency_key="k1", now=NOW)
    assert exc.value.details["vacancy_id"] == str(first.id)
    untouched = await Vacancy.get(second.id)
    assert untouched.selected_upsells == []
    assert (await credits_service.get_balance(employer.id, NOW)).available == 15


async def test_extension_survives_concurrent_expiry_sweep(employer, pid, grant, make_vacancy, slow_vacancy_writes):
    await grant(20)
    vacancy = await make_vacancy(closing_date=datetime(2026, 1, 14))
    _, result = await asyncio.gather(
        vacancies_service.expire_vacancies(NOW),
        boost_service.boost_vacancy(
            employer.id, str(vacancy.id), [pid("extension")], new_closing_date=date(2026, 3, 1), now=NOW
        ),
    )
    stored = await Vacancy.get(vacancy.id)
    assert stored.status == "gepubliceerd"
    assert stored.closing_date == datetime(2026, 3, 1)
    assert stored.needs_sync is True
    spend = await Transaction.find_one(Transaction.id == PydanticObjectId(result.transaction_id))
    assert spend.status == "paid"


async def test_boost_on_deleted_vacancy_releases_credits(employer, pid, grant, make_vacancy, monkeypatch):
    await grant(20)
    vacancy = await make_vacancy()
    write = vacancies_service.update_where

    async def delete_first(*args, **kwargs):
        await Vacancy.find_one(Vacancy.id == vacancy.id).delete()
        return await write(*args, **kwargs)

    monkeypatch.setattr(vacancies_service, "update_where", delete_first)
    with pytest.raises(StoreWriteError):
        await boost_service.boost_vacancy(
            employer.id, str(vacancy.id), [pid("extension")], new_closing_date=date(2026, 3, 1), now=NOW
        )
    assert (await credits_service.get_balance(employer.id, NOW)).available == 20
