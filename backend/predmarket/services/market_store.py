"""Single-writer access to the persisted market state."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from predmarket import schemas
from predmarket.core.config import Settings
from predmarket.db import session_scope
from predmarket.models import Market, OptionId, utcnow
from predmarket.repositories import MarketRepository, ResolutionRepository


@dataclass(slots=True)
class MarketWriter:
    """Handles available to code holding the writer lock."""

    session: Session
    markets: MarketRepository
    resolutions: ResolutionRepository

    def checkpoint(self) -> None:
        """Commit what has been written so far so a crash cannot lose it."""

        self.session.commit()

    def reload(self, market: Market) -> None:
        """End the current transaction and re-read ``market`` from the database.

        The lock only serialises this process; a resolution job running
        elsewhere can change the market while a transfer is awaited.
        """

        self.session.commit()
        self.session.refresh(market)


class MarketStore:
    """Owns the market record and serialises every mutation.

    All writes go through :meth:`writer`, which holds an ``asyncio.Lock`` for
    the whole read-modify-write so vote intake, the transfer monitor and the
    settlement engine never interleave. Readers use :meth:`snapshot` and only
    ever see committed state.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    def bootstrap(
        self,
        *,
        question: str,
        end_time: datetime,
        options: Iterable[tuple[str, str, str]],
    ) -> None:
        """Create the market on first start; later starts keep the stored one."""

        options = list(options)
        with session_scope(self._session_factory) as session:
            repo = MarketRepository(session)
            existing = repo.get_market()
            if existing is not None:
                stored = {option.option_id: option.collection_address for option in existing.options}
                configured = {option_id: address for option_id, _, address in options}
                if stored != configured:
                    logger.warning(
                        "Configured collection addresses {} differ from stored market {}; keeping stored",
                        configured,
                        stored,
                    )
                logger.info("Loaded existing market {!r} (resolved={})", existing.question, existing.resolved)
                return
            market = repo.create_market(question=question, end_time=end_time, options=options)
            logger.info("Created market {!r} closing at {}", market.question, market.end_time.isoformat())

    @asynccontextmanager
    async def writer(self) -> AsyncIterator[MarketWriter]:
        async with self._lock:
            with session_scope(self._session_factory) as session:
                yield MarketWriter(
                    session=session,
                    markets=MarketRepository(session),
                    resolutions=ResolutionRepository(session),
                )

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def snapshot(self) -> schemas.Market | None:
        """Return a detached copy of the committed market state."""

        with session_scope(self._session_factory) as session:
            market = MarketRepository(session).get_market()
            if market is None:
                return None
            return to_snapshot(market)


def configured_options(settings: Settings) -> list[tuple[str, str, str]]:
    """``(option_id, text, collection_address)`` for the two configured outcomes."""

    return [
        (OptionId.YES.value, "Yes", settings.yes_wallet_address),
        (OptionId.NO.value, "No", settings.no_wallet_address),
    ]


def market_end_time(settings: Settings, *, now: datetime | None = None) -> datetime:
    return (now or utcnow()) + timedelta(hours=settings.prediction_duration_hours)


def to_snapshot(market: Market) -> schemas.Market:
    """Convert a loaded ``Market`` row; unfinished resolutions are not exposed."""

    snapshot = schemas.Market.model_validate(market)
    if not market.resolved:
        snapshot = snapshot.model_copy(update={"resolution": None})
    return snapshot
