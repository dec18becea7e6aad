from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from predmarket.db import session_scope
from predmarket.domain import PayoutPlan
from predmarket.models import MarketStatus, PaymentSource
from predmarket.repositories import MarketRepository, ResolutionRepository

from conftest import NO_ADDRESS, YES_ADDRESS


def _option_totals(snapshot, option_id):
    option = next(item for item in snapshot.options if item.option_id == option_id)
    voter_sum = sum(voter.amount for voter in option.voters)
    tx_sum = sum(tx.amount for voter in option.voters for tx in voter.transactions)
    return option, voter_sum, tx_sum


def test_bootstrap_creates_single_active_market(store, test_settings):
    snapshot = store.snapshot()

    assert snapshot.question == test_settings.prediction_question
    assert snapshot.status == MarketStatus.ACTIVE.value
    assert snapshot.resolved is False
    assert snapshot.winning_option is None
    assert snapshot.resolution is None
    assert [option.option_id for option in snapshot.options] == ["yes", "no"]
    assert [option.collection_address for option in snapshot.options] == [YES_ADDRESS, NO_ADDRESS]
    assert snapshot.end_time > datetime.now(timezone.utc)


def test_bootstrap_reuses_existing_market(store, test_settings):
    store.bootstrap(
        question="A different question",
        end_time=datetime.now(timezone.utc) + timedelta(hours=1),
        options=[("yes", "Yes", YES_ADDRESS), ("no", "No", NO_ADDRESS)],
    )
    assert store.snapshot().question == test_settings.prediction_question


@pytest.mark.asyncio
async def test_repeat_stakes_accumulate_into_one_voter(store, stake):
    await stake("yes", "rVoterA", "10")
    await stake("yes", "rVoterA", "10")

    option, voter_sum, tx_sum = _option_totals(store.snapshot(), "yes")

    assert len(option.voters) == 1
    assert option.voters[0].amount == 20
    assert len(option.voters[0].transactions) == 2
    assert option.votes == 2
    assert option.amount == option.total_received == voter_sum == tx_sum == 20


@pytest.mark.asyncio
async def test_amount_invariant_holds_over_mixed_stakes(store, stake):
    for address, amount in [("rA", "1.5"), ("rB", "0.000001"), ("rA", "2"), ("rC", "7.25")]:
        await stake("no", address, amount)

    option, voter_sum, tx_sum = _option_totals(store.snapshot(), "no")

    assert [voter.address for voter in option.voters] == ["rA", "rB", "rC"]
    assert option.votes == 4
    assert option.amount == pytest.approx(10.750001)
    assert option.amount == option.total_received
    assert voter_sum == pytest.approx(option.amount)
    assert tx_sum == pytest.approx(option.amount)


@pytest.mark.asyncio
async def test_known_transaction_hash_is_recorded_once(store):
    async with store.writer() as writer:
        market = writer.markets.get_market()
        option = writer.markets.get_option(market, "yes")
        first = writer.markets.record_payment(option, sender="rA", amount_drops=5_000_000, tx_hash="DUP")
        second = writer.markets.record_payment(
            option, sender="rA", amount_drops=5_000_000, tx_hash="DUP", source=PaymentSource.MONITOR
        )

    assert first is not None
    assert second is None
    snapshot = store.snapshot()
    assert snapshot.options[0].votes == 1
    assert snapshot.options[0].amount == 5


def test_record_payment_rejects_non_positive_amount(store):
    with session_scope(store._session_factory) as session:
        repo = MarketRepository(session)
        option = repo.get_option(repo.get_market(), "yes")
        with pytest.raises(ValueError):
            repo.record_payment(option, sender="rA", amount_drops=0, tx_hash="ZERO")


def test_option_lookup_by_collection_address(store):
    with session_scope(store._session_factory) as session:
        repo = MarketRepository(session)
        assert repo.option_by_address(NO_ADDRESS).option_id == "no"
        assert repo.option_by_address("rUnknown") is None


def test_snapshot_hides_unfinished_resolution(store):
    with session_scope(store._session_factory) as session:
        markets = MarketRepository(session)
        market = markets.get_market()
        option = markets.get_option(market, "yes")
        markets.record_payment(option, sender="rA", amount_drops=1_000_000, tx_hash="T1")
        ResolutionRepository(session).begin_resolution(
            market,
            PayoutPlan(
                winning_option="yes",
                total_pool=Decimal("1"),
                total_payout=Decimal("0.9"),
                winner_count=1,
                reward_per_winner=Decimal("0.9"),
                winners=["rA"],
            ),
        )

    snapshot = store.snapshot()
    assert snapshot.resolved is False
    assert snapshot.resolution is None

    with session_scope(store._session_factory) as session:
        market = MarketRepository(session).get_market()
        resolution = ResolutionRepository(session).open_resolution(market)
        assert resolution is not None
        assert [payout.status for payout in resolution.rewards] == ["pending"]
        assert resolution.rewards[0].amount == Decimal("0.9")


@pytest.mark.asyncio
async def test_writer_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        async with store.writer() as writer:
            market = writer.markets.get_market()
            option = writer.markets.get_option(market, "yes")
            writer.markets.record_payment(option, sender="rA", amount_drops=1_000_000, tx_hash="ROLLBACK")
            raise RuntimeError("boom")

    assert store.snapshot().options[0].votes == 0
    assert store.locked is False
