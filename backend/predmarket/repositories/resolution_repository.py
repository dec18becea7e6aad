"""Persistence for resolution attempts and their per-winner payouts."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy.orm import Session

from predmarket.domain import PayoutPlan
from predmarket.models import (
    Market,
    MarketOption,
    MarketStatus,
    Payout,
    PayoutStatus,
    Resolution,
    ResolutionStatus,
    utcnow,
)
from predmarket.services.ledger.units import xrp_to_drops


class ResolutionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def open_resolution(self, market: Market) -> Resolution | None:
        """Return the unfinished resolution for ``market`` if one exists."""

        resolution = market.resolution
        if resolution is None or resolution.is_completed:
            return None
        return resolution

    def begin_resolution(self, market: Market, plan: PayoutPlan) -> Resolution:
        """Persist the plan and one pending payout per winner before any transfer."""

        reward_drops = xrp_to_drops(plan.reward_per_winner)
        resolution = Resolution(
            resolution_id=uuid4().hex,
            winning_option=plan.winning_option,
            status=ResolutionStatus.IN_PROGRESS.value,
            total_pool_drops=xrp_to_drops(plan.total_pool),
            total_payout_drops=xrp_to_drops(plan.total_payout),
            winner_count=plan.winner_count,
            reward_per_winner_drops=reward_drops,
            success_count=0,
            failed_count=0,
            started_at=utcnow(),
        )
        for position, address in enumerate(plan.winners):
            resolution.rewards.append(
                Payout(
                    position=position,
                    destination_address=address,
                    amount_drops=reward_drops,
                    status=PayoutStatus.PENDING.value,
                    attempts=0,
                )
            )
        market.resolution = resolution
        self._session.add(resolution)
        self._session.flush()
        return resolution

    def mark_submitted(self, payout: Payout, tx_hash: str) -> None:
        payout.transfer_hash = tx_hash
        payout.attempts += 1
        payout.updated_at = utcnow()
        self._session.flush()

    def mark_completed(self, payout: Payout, option: MarketOption, tx_hash: str) -> None:
        payout.transfer_hash = tx_hash
        payout.status = PayoutStatus.COMPLETED.value
        payout.error_message = None
        payout.updated_at = utcnow()
        option.total_distributed_drops += payout.amount_drops
        self._session.flush()

    def mark_failed(self, payout: Payout, error: str) -> None:
        payout.status = PayoutStatus.FAILED.value
        payout.error_message = error
        payout.updated_at = utcnow()
        self._session.flush()

    def finalize(self, market: Market, resolution: Resolution) -> Resolution:
        """Close the resolution and flip the market to resolved in one step."""

        resolution.success_count = sum(
            1 for payout in resolution.rewards if payout.status == PayoutStatus.COMPLETED.value
        )
        resolution.failed_count = sum(
            1 for payout in resolution.rewards if payout.status == PayoutStatus.FAILED.value
        )
        resolution.status = ResolutionStatus.COMPLETED.value
        resolution.completed_at = utcnow()

        market.resolved = True
        market.status = MarketStatus.RESOLVED.value
        market.winning_option = resolution.winning_option
        market.touch()
        self._session.flush()
        return resolution
