"""Typed domain records shared by the ledger gateway, services and persistence."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal


@dataclass(slots=True, frozen=True)
class IncomingPayment:
    """A validated payment observed arriving at a watched address."""

    sender: str
    destination: str
    amount: Decimal
    tx_hash: str
    timestamp: datetime
    ledger_index: int | None = None


@dataclass(slots=True)
class PayoutPlan:
    """Frozen settlement arithmetic for one resolution attempt."""

    winning_option: str
    total_pool: Decimal
    total_payout: Decimal
    winner_count: int
    reward_per_winner: Decimal
    winners: list[str] = field(default_factory=list)
