"""Resolve the market and pay the winning side out of the treasury."""

from __future__ import annotations

import asyncio
import secrets
from decimal import Decimal

from loguru import logger

from predmarket import schemas
from predmarket.core.config import Settings
from predmarket.domain import PayoutPlan
from predmarket.errors import (
    AlreadyResolved,
    EmptyPool,
    InsufficientTreasuryBalance,
    InvalidOutcome,
    MarketNotFound,
    NoWinners,
    OptionNotFound,
    ResolutionInProgress,
    RewardTooSmall,
    TreasuryNotConfigured,
    Unauthorized,
)
from predmarket.models import Market, MarketOption, Payout, PayoutStatus, Resolution

from .ledger.base import (
    LedgerConnection,
    LedgerGateway,
    PaymentRequest,
    TransactionStatus,
    TransferRejected,
)
from .ledger.units import MIN_TRANSFER_XRP, floor_xrp, quantize_xrp
from .market_store import MarketStore, MarketWriter, to_snapshot
from .retry import Sleep
from .transfers import PollPolicy, await_finality, submit_and_confirm
from .vote_service import VALID_OPTIONS


def compute_payout_plan(market: Market, outcome: str, fee_rate: Decimal) -> PayoutPlan:
    """Freeze pool, winners and per-winner reward for ``outcome``.

    The pool is every stake on every option; the winners are the voters on
    ``outcome`` with a positive stake, in the order they were recorded. The
    reward rounds down to whole drops so the transfers never exceed the
    payout.
    """

    winning = next((option for option in market.options if option.option_id == outcome), None)
    winners = [voter.address for voter in winning.voters if voter.amount_drops > 0] if winning else []
    if not winners:
        raise NoWinners(f"No voters with a stake on '{outcome}'")

    total_pool = sum((voter.amount for option in market.options for voter in option.voters), Decimal("0"))
    if total_pool <= 0:
        raise EmptyPool("Total pool is empty")

    total_payout = quantize_xrp(total_pool * (Decimal("1") - fee_rate))
    winner_count = max(1, len(winners))
    reward_per_winner = floor_xrp(total_payout / winner_count)
    if reward_per_winner < MIN_TRANSFER_XRP:
        raise RewardTooSmall(
            f"Reward per winner {reward_per_winner} XRP is below the minimum transfer of {MIN_TRANSFER_XRP} XRP"
        )

    return PayoutPlan(
        winning_option=outcome,
        total_pool=total_pool,
        total_payout=total_payout,
        winner_count=winner_count,
        reward_per_winner=reward_per_winner,
        winners=winners,
    )


def _outstanding(resolution: Resolution) -> list[Payout]:
    """Payouts that still need a fresh transfer from the treasury."""

    return [
        payout
        for payout in resolution.rewards
        if payout.status != PayoutStatus.COMPLETED.value and not payout.transfer_hash
    ]


class SettlementEngine:
    """Drives a resolution from precondition checks to the final market write.

    The whole run happens under the store's writer lock. A ``resolutions`` row
    and one ``payouts`` row per winner are committed before the first
    transfer and each payout is checkpointed as it settles, so an
    interrupted run resumes where it stopped instead of paying anyone twice.
    """

    def __init__(
        self,
        store: MarketStore,
        gateway: LedgerGateway,
        settings: Settings,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._settings = settings
        self._sleep = sleep
        self._payout_policy = PollPolicy(
            initial_delay=settings.payout_poll_initial_seconds,
            max_delay=settings.payout_poll_max_seconds,
            timeout=settings.payout_finality_timeout_seconds,
            max_attempts=settings.payout_poll_max_attempts,
        )

    def _authorize(self, admin_credential: str | None) -> None:
        expected = self._settings.admin_secret.encode()
        if not admin_credential or not secrets.compare_digest(admin_credential.encode(), expected):
            raise Unauthorized("Unauthorized")

    async def resolve(self, outcome: str | None, admin_credential: str | None) -> schemas.ResolutionResponse:
        self._authorize(admin_credential)

        async with self._store.writer() as writer:
            market = writer.markets.get_market()
            if market is None:
                raise MarketNotFound("No prediction found")
            if market.resolved:
                raise AlreadyResolved("Prediction already resolved")

            outcome_key = str(outcome or "").strip().lower()
            if outcome_key not in VALID_OPTIONS:
                raise InvalidOutcome(f"Invalid outcome: {outcome!r}. Expected one of {', '.join(VALID_OPTIONS)}")

            resolution = writer.resolutions.open_resolution(market)
            plan: PayoutPlan | None = None
            if resolution is not None:
                if resolution.winning_option != outcome_key:
                    raise ResolutionInProgress(
                        f"Resolution {resolution.resolution_id} for '{resolution.winning_option}' is still in progress"
                    )
                logger.info("Resuming resolution {} for '{}'", resolution.resolution_id, outcome_key)
            else:
                plan = compute_payout_plan(market, outcome_key, self._settings.platform_fee_rate)

            if not self._settings.treasury_configured:
                raise TreasuryNotConfigured("Treasury wallet is not configured")
            option = writer.markets.get_option(market, outcome_key)
            if option is None:
                raise OptionNotFound(f"Option '{outcome_key}' missing from the stored market")

            async with self._gateway.connect() as connection:
                await self._check_treasury(connection, plan, resolution)

                if resolution is None:
                    plan = await self._freeze_plan(connection, writer, market, plan)
                    resolution = writer.resolutions.begin_resolution(market, plan)
                    writer.checkpoint()
                    logger.info(
                        "Started resolution {} outcome={} pool={} payout={} winners={} reward={}",
                        resolution.resolution_id,
                        outcome_key,
                        plan.total_pool,
                        plan.total_payout,
                        plan.winner_count,
                        plan.reward_per_winner,
                    )

                await self._pay_winners(connection, writer, resolution, option)

            writer.resolutions.finalize(market, resolution)
            writer.checkpoint()
            logger.info(
                "Resolved prediction as '{}': {} paid, {} failed",
                outcome_key,
                resolution.success_count,
                resolution.failed_count,
            )
            return self._response(market, resolution)

    async def _freeze_plan(
        self,
        connection: LedgerConnection,
        writer: MarketWriter,
        market: Market,
        plan: PayoutPlan,
    ) -> PayoutPlan:
        """Re-read the market after the treasury check and settle on a plan nobody changed.

        Another process may have recorded a stake, or started its own
        resolution, while the balance lookup was in flight.
        """

        while True:
            writer.reload(market)
            if market.resolved:
                raise AlreadyResolved("Prediction already resolved")
            if writer.resolutions.open_resolution(market) is not None:
                raise ResolutionInProgress("Another resolution started for this prediction")
            fresh = compute_payout_plan(market, plan.winning_option, self._settings.platform_fee_rate)
            if fresh == plan:
                return plan
            logger.info("Stakes changed during the treasury check; recomputing the payout plan")
            await self._check_treasury(connection, fresh, None)
            plan = fresh

    async def _check_treasury(
        self,
        connection: LedgerConnection,
        plan: PayoutPlan | None,
        resolution: Resolution | None,
    ) -> None:
        if plan is not None:
            required = plan.total_payout
        else:
            required = resolution.reward_per_winner * len(_outstanding(resolution))
        if required <= 0:
            return
        treasury = await connection.account_info(self._settings.admin_wallet_address)
        if treasury.balance < required:
            raise InsufficientTreasuryBalance(
                f"Insufficient funds in admin wallet. Need {required} XRP, have {treasury.balance} XRP",
                details={"required": str(required), "available": str(treasury.balance)},
            )

    async def _pay_winners(
        self,
        connection: LedgerConnection,
        writer: MarketWriter,
        resolution: Resolution,
        option: MarketOption,
    ) -> None:
        payouts = list(resolution.rewards)
        last_index = len(payouts) - 1
        for index, payout in enumerate(payouts):
            if payout.status == PayoutStatus.COMPLETED.value:
                continue
            succeeded = await self._settle_payout(connection, writer, payout, option)
            writer.checkpoint()
            if succeeded and index < last_index:
                await self._sleep(self._settings.payout_interval_seconds)

    async def _settle_payout(
        self,
        connection: LedgerConnection,
        writer: MarketWriter,
        payout: Payout,
        option: MarketOption,
    ) -> bool:
        destination = payout.destination_address
        try:
            if payout.transfer_hash:
                status = await self._reconcile(connection, payout.transfer_hash)
            else:
                status = await self._send(connection, writer, payout)
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or exc.__class__.__name__
            writer.resolutions.mark_failed(payout, message)
            logger.warning("Payout of {} XRP to {} failed: {}", payout.amount, destination, message)
            return False

        writer.resolutions.mark_completed(payout, option, status.tx_hash)
        logger.info("Paid {} XRP to {} hash={}", payout.amount, destination, status.tx_hash)
        return True

    async def _send(
        self, connection: LedgerConnection, writer: MarketWriter, payout: Payout
    ) -> TransactionStatus:
        treasury = self._settings.admin_wallet_address
        account = await connection.account_info(treasury)
        current_index = await connection.validated_ledger_index()
        signed = await connection.sign_payment(
            self._settings.admin_wallet_secret,
            PaymentRequest(
                account=treasury,
                destination=payout.destination_address,
                amount=payout.amount,
                sequence=account.sequence,
                last_ledger_sequence=current_index + self._settings.payout_ledger_offset,
                fee_drops=self._settings.payout_fee_drops,
            ),
        )
        # Persist the hash first; a crash after submit is reconciled, never resent.
        writer.resolutions.mark_submitted(payout, signed.tx_hash)
        writer.checkpoint()
        return await submit_and_confirm(connection, signed, self._payout_policy, sleep=self._sleep)

    async def _reconcile(self, connection: LedgerConnection, tx_hash: str) -> TransactionStatus:
        logger.info("Reconciling previously submitted payout {}", tx_hash)
        status = await await_finality(connection, tx_hash, self._payout_policy, sleep=self._sleep)
        if not status.succeeded:
            raise TransferRejected(status.result_code or "unknown")
        return status

    def _response(self, market: Market, resolution: Resolution) -> schemas.ResolutionResponse:
        result = schemas.ResolutionResult.model_validate(resolution)
        return schemas.ResolutionResponse(
            **result.model_dump(),
            success=True,
            message=f"Prediction resolved as {resolution.winning_option.upper()}",
            prediction=to_snapshot(market),
        )
