"""Standalone job that resolves the market and pays out winners."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Sequence

from loguru import logger

from predmarket import schemas
from predmarket.core.config import Settings, get_settings
from predmarket.core.logging import configure_logging
from predmarket.db import build_session_factory, init_db
from predmarket.errors import MarketError
from predmarket.services.ledger import LedgerGateway, XrplGateway
from predmarket.services.market_store import MarketStore, configured_options, market_end_time
from predmarket.services.settlement_service import SettlementEngine


class ResolutionPipeline:
    """Run the settlement engine without the HTTP surface."""

    def __init__(self, settings: Settings | None = None, *, gateway: LedgerGateway | None = None) -> None:
        self.settings = settings or get_settings()
        self._gateway = gateway or XrplGateway(
            str(self.settings.xrpl_rpc_url),
            timeout=self.settings.ledger_request_timeout_seconds,
            poll_interval=self.settings.monitor_poll_interval_seconds,
        )

    async def run(self, outcome: str) -> schemas.ResolutionResponse:
        engine, session_factory = build_session_factory(self.settings.resolved_database_url)
        try:
            init_db(engine)
            store = MarketStore(session_factory)
            store.bootstrap(
                question=self.settings.prediction_question,
                end_time=market_end_time(self.settings),
                options=configured_options(self.settings),
            )
            logger.info("Starting resolution run outcome={}", outcome)
            settlement = SettlementEngine(store, self._gateway, self.settings)
            response = await settlement.resolve(outcome, self.settings.admin_secret)
        finally:
            engine.dispose()

        logger.info(
            "Resolution run finished: winners={}, paid={}, failed={}, reward={}",
            response.winner_count,
            response.success_count,
            response.failed_count,
            response.reward_per_winner,
        )
        return response


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Resolve the prediction market and distribute rewards to the winning side",
    )
    parser.add_argument(
        "--outcome",
        required=True,
        choices=["yes", "no"],
        help="Winning option",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where the resolution result will be written as JSON",
    )
    return parser.parse_args(argv)


def _write_summary(response: schemas.ResolutionResponse, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(response.model_dump(mode="json", by_alias=True), indent=2))
    logger.info("Resolution summary written to {}", path)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    pipeline = ResolutionPipeline(settings)
    try:
        response = asyncio.run(pipeline.run(args.outcome))
    except MarketError as exc:
        logger.error("Resolution refused: {} ({})", exc.code, exc.message)
        return 1

    if args.summary_path:
        _write_summary(response, args.summary_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
