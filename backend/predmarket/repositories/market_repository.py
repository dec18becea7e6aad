"""Market, option and vote persistence."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from predmarket.models import (
    Market,
    MarketOption,
    MarketStatus,
    PaymentSource,
    Resolution,
    Voter,
    VoteTransaction,
    utcnow,
)


class MarketRepository:
    """Encapsulate the single market and its stake ledger."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Queries

    def get_market(self) -> Market | None:
        stmt = (
            select(Market)
            .options(
                selectinload(Market.options)
                .selectinload(MarketOption.voters)
                .selectinload(Voter.transactions),
                selectinload(Market.resolution).selectinload(Resolution.rewards),
            )
            .order_by(Market.id)
            .limit(1)
        )
        return self._session.execute(stmt).scalars().first()

    def get_option(self, market: Market, option_id: str) -> MarketOption | None:
        for option in market.options:
            if option.option_id == option_id:
                return option
        return None

    def option_by_address(self, address: str) -> MarketOption | None:
        stmt = select(MarketOption).where(MarketOption.collection_address == address)
        return self._session.execute(stmt).scalars().first()

    def has_transaction(self, tx_hash: str) -> bool:
        stmt = select(func.count()).select_from(VoteTransaction).where(VoteTransaction.tx_hash == tx_hash)
        return bool(self._session.execute(stmt).scalar_one())

    # ------------------------------------------------------------------
    # Mutations

    def create_market(
        self,
        *,
        question: str,
        end_time: datetime,
        options: Iterable[tuple[str, str, str]],
    ) -> Market:
        """Create the market with ``(option_id, text, collection_address)`` options."""

        now = utcnow()
        market = Market(
            question=question,
            status=MarketStatus.ACTIVE.value,
            resolved=False,
            created_at=now,
            updated_at=now,
            end_time=end_time,
        )
        for position, (option_id, text, address) in enumerate(options):
            market.options.append(
                MarketOption(
                    option_id=option_id,
                    position=position,
                    text=text,
                    collection_address=address,
                    votes=0,
                    amount_drops=0,
                    total_received_drops=0,
                    total_distributed_drops=0,
                )
            )
        self._session.add(market)
        self._session.flush()
        return market

    def record_payment(
        self,
        option: MarketOption,
        *,
        sender: str,
        amount_drops: int,
        tx_hash: str,
        timestamp: datetime | None = None,
        source: PaymentSource = PaymentSource.INTAKE,
    ) -> VoteTransaction | None:
        """Apply one confirmed stake to ``option``.

        A hash that is already on record is ignored and ``None`` is returned,
        so each transfer moves the tallies exactly once whichever path sees
        it first.
        """

        if amount_drops <= 0:
            raise ValueError("recorded stakes must be positive")
        if self.has_transaction(tx_hash):
            return None

        voter = next((item for item in option.voters if item.address == sender), None)
        if voter is None:
            voter = Voter(address=sender, position=len(option.voters), amount_drops=0)
            option.voters.append(voter)

        record = VoteTransaction(
            tx_hash=tx_hash,
            amount_drops=amount_drops,
            source=source.value,
            timestamp=timestamp or utcnow(),
        )
        voter.transactions.append(record)
        voter.amount_drops += amount_drops

        option.votes += 1
        option.amount_drops += amount_drops
        option.total_received_drops += amount_drops
        option.market.touch()

        self._session.flush()
        return record
