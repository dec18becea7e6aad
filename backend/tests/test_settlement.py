from __future__ import annotations

import asyncio
from decimal import Decimal
from types import SimpleNamespace

import pytest
import pytest_asyncio

from predmarket.domain import IncomingPayment
from predmarket.errors import (
    AlreadyResolved,
    InsufficientTreasuryBalance,
    InvalidOutcome,
    MarketClosed,
    NoWinners,
    ResolutionInProgress,
    RewardTooSmall,
    TreasuryNotConfigured,
    Unauthorized,
)
from predmarket.models import PaymentSource, utcnow
from predmarket.services.ledger.base import TransactionStatus
from predmarket.services.ledger.units import xrp_to_drops
from predmarket.services.monitor import IncomingTransferMonitor
from predmarket.services.settlement_service import SettlementEngine, compute_payout_plan
from predmarket.services.vote_service import VoteIntake

from conftest import ADMIN_TOKEN, NO_ADDRESS, TREASURY_ADDRESS


@pytest.fixture
def engine(store, gateway, test_settings, sleep) -> SettlementEngine:
    gateway.balances[TREASURY_ADDRESS] = Decimal("1000")
    return SettlementEngine(store, gateway, test_settings, sleep=sleep)


@pytest_asyncio.fixture
async def scenario(stake):
    await stake("yes", "rVoterA", "100")
    await stake("yes", "rVoterB", "50")
    await stake("no", "rVoterC", "150")


def _market(**stakes_by_option):
    options = []
    for option_id, stakes in stakes_by_option.items():
        voters = [
            SimpleNamespace(address=f"r{option_id}{index}", amount=Decimal(amount), amount_drops=int(Decimal(amount) * 1_000_000))
            for index, amount in enumerate(stakes)
        ]
        options.append(SimpleNamespace(option_id=option_id, voters=voters))
    return SimpleNamespace(options=options)


def test_payout_plan_pools_every_stake_and_rounds_reward_down():
    plan = compute_payout_plan(_market(yes=["1"] * 7, no=["3"]), "yes", Decimal("0.10"))

    assert plan.total_pool == Decimal("10")
    assert plan.total_payout == Decimal("9.000000")
    assert plan.winner_count == 7
    assert plan.reward_per_winner == Decimal("1.285714")
    assert plan.reward_per_winner * plan.winner_count <= plan.total_payout <= plan.total_pool


def test_payout_plan_rejects_sub_drop_rewards():
    with pytest.raises(RewardTooSmall):
        compute_payout_plan(_market(yes=["0.000001"] * 3, no=[]), "yes", Decimal("0.5"))


def test_payout_plan_requires_a_positive_winning_stake():
    with pytest.raises(NoWinners):
        compute_payout_plan(_market(yes=[], no=["5"]), "yes", Decimal("0.10"))


@pytest.mark.asyncio
async def test_scenario_pays_each_winner_its_share(engine, store, gateway, sleep, scenario):
    response = await engine.resolve("yes", ADMIN_TOKEN)

    assert response.success is True
    assert response.winning_option == "yes"
    assert response.total_pool == 300
    assert response.total_payout == 270
    assert response.winner_count == 2
    assert response.reward_per_winner == 135
    assert response.success_count == 2
    assert response.failed_count == 0
    assert response.failed_transactions == []
    assert [reward.destination_address for reward in response.rewards] == ["rVoterA", "rVoterB"]
    assert all(reward.status == "completed" and reward.transfer_hash for reward in response.rewards)

    assert gateway.paid_destinations() == ["rVoterA", "rVoterB"]
    secret, first = gateway.signed[0]
    assert secret == "sTreasurySecret"
    assert first.account == TREASURY_ADDRESS
    assert first.amount == Decimal("135")
    assert first.last_ledger_sequence == gateway.ledger_index + 4
    assert first.fee_drops == 12
    assert sleep.calls == [2.0]
    assert gateway.connections_open == 0

    snapshot = store.snapshot()
    assert snapshot.resolved is True
    assert snapshot.status == "resolved"
    assert snapshot.winning_option == "yes"
    assert snapshot.options[0].total_distributed == 270
    assert snapshot.resolution.resolution_id == response.resolution_id
    assert response.prediction.resolved is True


@pytest.mark.asyncio
async def test_one_failed_payout_does_not_abort_the_batch(engine, store, gateway, stake):
    await stake("yes", "rVoterA", "10")
    await stake("yes", "rVoterB", "10")
    await stake("yes", "rVoterC", "10")
    gateway.failing_destinations.add("rVoterB")

    response = await engine.resolve("yes", ADMIN_TOKEN)

    assert [reward.status for reward in response.rewards] == ["completed", "failed", "completed"]
    assert response.success_count == 2
    assert response.failed_count == 1
    assert response.success_count + response.failed_count == response.winner_count
    assert len(response.failed_transactions) == 1
    failure = response.failed_transactions[0]
    assert failure.voter == "rVoterB"
    assert failure.amount == 9
    assert "tecNO_DST_INSUF_XRP" in failure.error
    assert store.snapshot().options[0].total_distributed == 18


@pytest.mark.asyncio
async def test_wrong_admin_token_is_rejected_before_any_work(engine, gateway, scenario):
    for token in (None, "", "nope"):
        with pytest.raises(Unauthorized):
            await engine.resolve("yes", token)
    assert gateway.connections_opened == 0


@pytest.mark.asyncio
async def test_invalid_outcome(engine, scenario):
    with pytest.raises(InvalidOutcome):
        await engine.resolve("maybe", ADMIN_TOKEN)


@pytest.mark.asyncio
async def test_second_resolution_is_refused_and_result_is_unchanged(engine, store, gateway, scenario):
    await engine.resolve("yes", ADMIN_TOKEN)
    before = store.snapshot().resolution

    with pytest.raises(AlreadyResolved):
        await engine.resolve("no", ADMIN_TOKEN)

    assert store.snapshot().resolution == before
    assert len(gateway.signed) == 2


@pytest.mark.asyncio
async def test_no_winners_leaves_market_active(engine, store, gateway, stake):
    await stake("yes", "rVoterA", "10")

    with pytest.raises(NoWinners):
        await engine.resolve("no", ADMIN_TOKEN)

    snapshot = store.snapshot()
    assert snapshot.status == "active"
    assert snapshot.resolved is False
    assert gateway.connections_opened == 0


@pytest.mark.asyncio
async def test_insufficient_treasury_balance_attempts_no_transfers(engine, store, gateway, scenario):
    gateway.balances[TREASURY_ADDRESS] = Decimal("269.999999")

    with pytest.raises(InsufficientTreasuryBalance):
        await engine.resolve("yes", ADMIN_TOKEN)

    assert gateway.signed == []
    snapshot = store.snapshot()
    assert snapshot.resolved is False
    async with store.writer() as writer:
        assert writer.resolutions.open_resolution(writer.markets.get_market()) is None


@pytest.mark.asyncio
async def test_missing_treasury_wallet_is_an_internal_error(store, gateway, test_settings, scenario):
    settings = test_settings.model_copy(update={"admin_wallet_secret": None})
    engine = SettlementEngine(store, gateway, settings)

    with pytest.raises(TreasuryNotConfigured):
        await engine.resolve("yes", ADMIN_TOKEN)
    assert gateway.signed == []


async def _interrupted_resolution(store, gateway):
    """Leave a resolution behind whose first payout was submitted but never recorded."""

    async with store.writer() as writer:
        market = writer.markets.get_market()
        plan = compute_payout_plan(market, "yes", Decimal("0.10"))
        resolution = writer.resolutions.begin_resolution(market, plan)
        first = resolution.rewards[0]
        writer.resolutions.mark_submitted(first, "PREVIOUS")
    gateway.transactions["PREVIOUS"] = TransactionStatus(
        tx_hash="PREVIOUS",
        validated=True,
        result_code="tesSUCCESS",
        transaction_type="Payment",
        account=TREASURY_ADDRESS,
        destination="rVoterA",
        delivered_amount=Decimal("135"),
    )


@pytest.mark.asyncio
async def test_resume_reconciles_submitted_payouts_instead_of_resending(engine, store, gateway, scenario):
    await _interrupted_resolution(store, gateway)
    gateway.balances[TREASURY_ADDRESS] = Decimal("135")

    response = await engine.resolve("yes", ADMIN_TOKEN)

    assert [payment.destination for _, payment in gateway.signed] == ["rVoterB"]
    assert "PREVIOUS" in gateway.lookups
    assert [reward.transfer_hash for reward in response.rewards][0] == "PREVIOUS"
    assert response.success_count == 2
    assert store.snapshot().options[0].total_distributed == 270


@pytest.mark.asyncio
async def test_resume_with_a_different_outcome_is_refused(engine, store, gateway, scenario):
    await _interrupted_resolution(store, gateway)

    with pytest.raises(ResolutionInProgress):
        await engine.resolve("no", ADMIN_TOKEN)


@pytest.mark.asyncio
async def test_votes_are_closed_while_a_resolution_is_unfinished(store, gateway, test_settings, scenario):
    await _interrupted_resolution(store, gateway)
    intake = VoteIntake(store, gateway, test_settings)

    with pytest.raises(MarketClosed):
        await intake.submit_vote(option_id="no", amount="1", voter_address="rLate", voter_credential="s")


async def _hold_writer_during_treasury_check(engine, store, gateway):
    """Start a resolution and leave it parked on the treasury balance lookup."""

    release = asyncio.Event()
    gateway.hooks["account_info"] = [release.wait]
    resolving = asyncio.create_task(engine.resolve("yes", ADMIN_TOKEN))
    for _ in range(5):
        await asyncio.sleep(0)
    assert store.locked
    return resolving, release


@pytest.mark.asyncio
async def test_vote_waits_for_an_in_flight_resolution_and_is_refused(engine, store, gateway, test_settings, sleep, scenario):
    resolving, release = await _hold_writer_during_treasury_check(engine, store, gateway)
    intake = VoteIntake(store, gateway, test_settings, sleep=sleep)
    voting = asyncio.create_task(
        intake.submit_vote(option_id="no", amount="10", voter_address="rLate", voter_credential="sLate")
    )
    for _ in range(5):
        await asyncio.sleep(0)

    assert not voting.done()
    assert gateway.signed == []

    release.set()
    response, refused = await asyncio.gather(resolving, voting, return_exceptions=True)

    assert isinstance(refused, MarketClosed)
    assert response.total_pool == 300
    assert all(payment.account == TREASURY_ADDRESS for _, payment in gateway.signed)
    snapshot = store.snapshot()
    assert snapshot.resolution.total_pool == 300
    assert snapshot.options[1].votes == 1


@pytest.mark.asyncio
async def test_incoming_transfer_during_resolution_is_recorded_after_it(engine, store, gateway, scenario):
    resolving, release = await _hold_writer_during_treasury_check(engine, store, gateway)
    monitor = IncomingTransferMonitor(gateway, store)
    late = IncomingPayment(sender="rLate", destination=NO_ADDRESS, amount=Decimal("10"), tx_hash="LATE", timestamp=utcnow())
    reconciling = asyncio.create_task(monitor.reconcile(late))
    for _ in range(5):
        await asyncio.sleep(0)

    assert not reconciling.done()

    release.set()
    response, _ = await asyncio.gather(resolving, reconciling)

    assert response.total_pool == 300
    snapshot = store.snapshot()
    assert snapshot.resolution.total_pool == 300
    assert snapshot.options[1].amount == 160
    assert [reward.destination_address for reward in snapshot.resolution.rewards] == ["rVoterA", "rVoterB"]


@pytest.mark.asyncio
async def test_stake_committed_elsewhere_during_treasury_check_joins_the_plan(engine, store, gateway, stake, other_process_store):
    await stake("yes", "rVoterA", "100")
    await stake("no", "rVoterC", "150")

    async def record_elsewhere() -> None:
        async with other_process_store.writer() as writer:
            market = writer.markets.get_market()
            writer.markets.record_payment(
                writer.markets.get_option(market, "yes"),
                sender="rVoterB",
                amount_drops=xrp_to_drops(Decimal("50")),
                tx_hash="ELSEWHERE",
                source=PaymentSource.MONITOR,
            )

    gateway.hooks["account_info"] = [record_elsewhere]

    response = await engine.resolve("yes", ADMIN_TOKEN)

    assert response.total_pool == 300
    assert response.winner_count == 2
    assert response.reward_per_winner == 135
    assert gateway.paid_destinations() == ["rVoterA", "rVoterB"]


@pytest.mark.asyncio
async def test_resolution_started_elsewhere_during_treasury_check_is_refused(
    engine, store, gateway, scenario, other_process_store, test_settings, sleep
):
    other_engine = SettlementEngine(other_process_store, gateway, test_settings, sleep=sleep)
    gateway.hooks["account_info"] = [lambda: other_engine.resolve("yes", ADMIN_TOKEN)]

    with pytest.raises(AlreadyResolved):
        await engine.resolve("yes", ADMIN_TOKEN)

    assert gateway.paid_destinations() == ["rVoterA", "rVoterB"]
