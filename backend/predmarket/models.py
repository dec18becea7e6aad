from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base
from .services.ledger.units import drops_to_xrp


class MarketStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class OptionId(str, Enum):
    YES = "yes"
    NO = "no"


class ResolutionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentSource(str, Enum):
    INTAKE = "intake"
    MONITOR = "monitor"
    LEGACY = "legacy"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""

    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware column that always reads back as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value)


class Market(Base):
    __tablename__ = "markets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=MarketStatus.ACTIVE.value)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    winning_option: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    options: Mapped[list["MarketOption"]] = relationship(
        "MarketOption",
        back_populates="market",
        cascade="all, delete-orphan",
        order_by="MarketOption.position",
    )
    resolution: Mapped["Resolution | None"] = relationship(
        "Resolution", back_populates="market", uselist=False
    )

    def touch(self) -> None:
        self.updated_at = utcnow()

    def is_open_at(self, moment: datetime) -> bool:
        return ensure_utc(self.end_time) > moment


class MarketOption(Base):
    __tablename__ = "options"
    __table_args__ = (UniqueConstraint("market_id", "option_id", name="uq_options_market_option"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[int] = mapped_column(Integer, ForeignKey("markets.id"), nullable=False)
    option_id: Mapped[str] = mapped_column(String, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    text: Mapped[str] = mapped_column(String, nullable=False)
    collection_address: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    votes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_drops: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_received_drops: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_distributed_drops: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    market: Mapped[Market] = relationship("Market", back_populates="options")
    voters: Mapped[list["Voter"]] = relationship(
        "Voter",
        back_populates="option",
        cascade="all, delete-orphan",
        order_by="Voter.position",
    )

    @property
    def amount(self) -> Decimal:
        return drops_to_xrp(self.amount_drops)

    @property
    def total_received(self) -> Decimal:
        return drops_to_xrp(self.total_received_drops)

    @property
    def total_distributed(self) -> Decimal:
        return drops_to_xrp(self.total_distributed_drops)


class Voter(Base):
    __tablename__ = "voters"
    __table_args__ = (UniqueConstraint("option_pk", "address", name="uq_voters_option_address"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    option_pk: Mapped[int] = mapped_column(Integer, ForeignKey("options.id"), nullable=False)
    address: Mapped[str] = mapped_column(String, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_drops: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    option: Mapped[MarketOption] = relationship("MarketOption", back_populates="voters")
    transactions: Mapped[list["VoteTransaction"]] = relationship(
        "VoteTransaction",
        back_populates="voter",
        cascade="all, delete-orphan",
        order_by="VoteTransaction.id",
    )

    @property
    def amount(self) -> Decimal:
        return drops_to_xrp(self.amount_drops)


class VoteTransaction(Base):
    __tablename__ = "vote_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    voter_id: Mapped[int] = mapped_column(Integer, ForeignKey("voters.id"), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    amount_drops: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False, default=PaymentSource.INTAKE.value)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    voter: Mapped[Voter] = relationship("Voter", back_populates="transactions")

    @property
    def amount(self) -> Decimal:
        return drops_to_xrp(self.amount_drops)


class Resolution(Base):
    __tablename__ = "resolutions"

    resolution_id: Mapped[str] = mapped_column(String, primary_key=True)
    market_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("markets.id"), nullable=False, unique=True
    )
    winning_option: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=ResolutionStatus.IN_PROGRESS.value
    )
    total_pool_drops: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_payout_drops: Mapped[int] = mapped_column(BigInteger, nullable=False)
    winner_count: Mapped[int] = mapped_column(Integer, nullable=False)
    reward_per_winner_drops: Mapped[int] = mapped_column(BigInteger, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    market: Mapped[Market] = relationship("Market", back_populates="resolution")
    rewards: Mapped[list["Payout"]] = relationship(
        "Payout",
        back_populates="resolution",
        cascade="all, delete-orphan",
        order_by="Payout.position",
    )

    @property
    def is_completed(self) -> bool:
        return self.status == ResolutionStatus.COMPLETED.value

    @property
    def total_pool(self) -> Decimal:
        return drops_to_xrp(self.total_pool_drops)

    @property
    def total_payout(self) -> Decimal:
        return drops_to_xrp(self.total_payout_drops)

    @property
    def reward_per_winner(self) -> Decimal:
        return drops_to_xrp(self.reward_per_winner_drops)

    @property
    def timestamp(self) -> datetime:
        return self.completed_at or self.started_at

    @property
    def failed_transactions(self) -> list[dict[str, object]]:
        return [
            {"voter": reward.destination_address, "amount": reward.amount, "error": reward.error_message}
            for reward in self.rewards
            if reward.status == PayoutStatus.FAILED.value
        ]


class Payout(Base):
    """One outbound reward transfer; doubles as the per-winner idempotency record."""

    __tablename__ = "payouts"
    __table_args__ = (
        UniqueConstraint("resolution_id", "destination_address", name="uq_payouts_resolution_destination"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    resolution_id: Mapped[str] = mapped_column(
        String, ForeignKey("resolutions.resolution_id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    destination_address: Mapped[str] = mapped_column(String, nullable=False)
    amount_drops: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transfer_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=PayoutStatus.PENDING.value)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    resolution: Mapped[Resolution] = relationship("Resolution", back_populates="rewards")

    @property
    def amount(self) -> Decimal:
        return drops_to_xrp(self.amount_drops)

    @property
    def timestamp(self) -> datetime:
        return self.updated_at
