"""Vote intake: move a stake on-chain, then record it against an option."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

from loguru import logger

from predmarket import schemas
from predmarket.core.config import Settings
from predmarket.errors import (
    InvalidAmount,
    InvalidDestination,
    InvalidOption,
    MarketClosed,
    MarketNotFound,
    MissingCredential,
    MissingTransactionHash,
    OptionNotFound,
    TransferFailed,
    UnverifiedTransaction,
)
from predmarket.models import Market, MarketOption, OptionId, PaymentSource, utcnow

from .ledger.base import LedgerError, LedgerGateway, PaymentRequest, TransactionStatus
from .ledger.units import XRP_QUANTUM, parse_xrp_amount, xrp_to_drops
from .market_store import MarketStore, MarketWriter
from .retry import RetryError, Sleep, exponential_backoff, retry_async
from .transfers import PollPolicy, is_transient, submit_and_confirm

VALID_OPTIONS = tuple(option.value for option in OptionId)


def validate_option(option_id: Any) -> str:
    candidate = str(option_id or "").strip().lower()
    if candidate not in VALID_OPTIONS:
        raise InvalidOption(f"Invalid option: {option_id!r}. Expected one of {', '.join(VALID_OPTIONS)}")
    return candidate


def validate_amount(amount: Any) -> Decimal:
    stake = parse_xrp_amount(amount)
    if stake is None:
        raise InvalidAmount(f"Invalid amount: {amount!r}. Must be a positive number")
    if stake != stake.quantize(XRP_QUANTUM):
        raise InvalidAmount(f"Invalid amount: {amount!r}. At most 6 decimal places are supported")
    return stake


def ensure_not_settling(writer: MarketWriter, market: Market) -> None:
    if market.resolved:
        raise MarketClosed("Prediction already resolved")
    if writer.resolutions.open_resolution(market) is not None:
        raise MarketClosed("Prediction is being resolved")


def ensure_accepting_votes(writer: MarketWriter, market: Market) -> None:
    ensure_not_settling(writer, market)
    if not market.is_open_at(utcnow()):
        raise MarketClosed(f"Voting closed at {market.end_time.isoformat()}")


class VoteIntake:
    """Accept stakes for the market.

    ``submit_vote`` signs and submits the voter's transfer itself;
    ``record_verified_vote`` accepts a transfer the client already made.
    Both hold the store's writer lock from the open-market check to the
    final write, so the transfer and its bookkeeping are one step.
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
        self._finality_policy = PollPolicy(
            initial_delay=settings.payout_poll_initial_seconds,
            max_delay=settings.payout_poll_max_seconds,
            timeout=settings.vote_finality_timeout_seconds,
            max_attempts=settings.payout_poll_max_attempts,
        )

    async def submit_vote(
        self,
        *,
        option_id: Any,
        amount: Any,
        voter_address: str | None,
        voter_credential: str | None,
        destination_address: str | None = None,
        destination_tag: int | None = None,
    ) -> schemas.VoteReceipt:
        option_key = validate_option(option_id)
        stake = validate_amount(amount)
        if not (voter_address or "").strip() or not (voter_credential or "").strip():
            raise MissingCredential("Missing sender address or wallet secret")
        voter_address = voter_address.strip()

        async with self._store.writer() as writer:
            market, option = self._load_option(writer, option_key)
            destination = (destination_address or "").strip() or option.collection_address
            if destination != option.collection_address:
                raise InvalidDestination(
                    f"Destination {destination} is not the collection address for '{option_key}'"
                )

            payment = PaymentRequest(
                account=voter_address,
                destination=destination,
                amount=stake,
                destination_tag=destination_tag,
            )
            tx_hash = await self._transfer(voter_credential, payment)
            self._recheck_open(writer, market, tx_hash)

            record = writer.markets.record_payment(
                option,
                sender=voter_address,
                amount_drops=xrp_to_drops(stake),
                tx_hash=tx_hash,
                source=PaymentSource.INTAKE,
            )
            if record is None:
                logger.warning("Transfer {} was already recorded; tallies unchanged", tx_hash)
            else:
                logger.info(
                    "Recorded vote option={} amount={} sender={} hash={}",
                    option_key,
                    stake,
                    voter_address,
                    tx_hash,
                )
            return _receipt(option_key, stake, voter_address, tx_hash, option)

    async def record_verified_vote(
        self,
        *,
        option_id: Any,
        amount: Any,
        voter_address: str | None,
        tx_hash: str | None,
    ) -> schemas.VoteReceipt:
        """Record a transfer the voter submitted on their own."""

        option_key = validate_option(option_id)
        stake = validate_amount(amount)
        if not (voter_address or "").strip():
            raise MissingCredential("Missing sender address")
        if not (tx_hash or "").strip():
            raise MissingTransactionHash("Missing transaction hash")
        voter_address = voter_address.strip()
        tx_hash = tx_hash.strip()

        async with self._store.writer() as writer:
            market, option = self._load_option(writer, option_key)
            if writer.markets.has_transaction(tx_hash):
                logger.info("Legacy vote {} already recorded", tx_hash)
                return _receipt(option_key, stake, voter_address, tx_hash, option, message="Vote already recorded")

            if self._settings.legacy_vote_verification:
                await self._verify_payment(tx_hash, voter_address, option.collection_address, stake)
                self._recheck_open(writer, market, tx_hash)

            writer.markets.record_payment(
                option,
                sender=voter_address,
                amount_drops=xrp_to_drops(stake),
                tx_hash=tx_hash,
                source=PaymentSource.LEGACY,
            )
            logger.info(
                "Recorded legacy vote option={} amount={} sender={} hash={}",
                option_key,
                stake,
                voter_address,
                tx_hash,
            )
            return _receipt(option_key, stake, voter_address, tx_hash, option)

    def _load_option(self, writer: MarketWriter, option_key: str) -> tuple[Market, MarketOption]:
        market = writer.markets.get_market()
        if market is None:
            raise MarketNotFound("No prediction found")
        ensure_accepting_votes(writer, market)
        option = writer.markets.get_option(market, option_key)
        if option is None:
            raise OptionNotFound(f"Option '{option_key}' missing from the stored market")
        return market, option

    def _recheck_open(self, writer: MarketWriter, market: Market, tx_hash: str) -> None:
        """Refuse to record ``tx_hash`` if settlement started while it was in flight."""

        writer.reload(market)
        try:
            ensure_not_settling(writer, market)
        except MarketClosed as exc:
            logger.error("Transfer {} confirmed after the market closed; stake not recorded", tx_hash)
            raise MarketClosed(exc.message, details={"transactionHash": tx_hash}) from exc

    async def _transfer(self, secret: str, payment: PaymentRequest) -> str:
        """Sign once, then submit until a validated success or the attempts run out."""

        max_attempts = self._settings.vote_max_attempts
        async with self._gateway.connect() as connection:
            try:
                signed = await connection.sign_payment(secret, payment)
            except LedgerError as exc:
                raise TransferFailed("Could not sign vote transfer", last_error=exc) from exc

            logger.info(
                "Submitting vote transfer {} amount={} to {}",
                signed.tx_hash,
                payment.amount,
                payment.destination,
            )
            try:
                status = await retry_async(
                    lambda: submit_and_confirm(
                        connection, signed, self._finality_policy, sleep=self._sleep
                    ),
                    max_attempts=max_attempts,
                    backoff=exponential_backoff(1.0),
                    is_retryable=is_transient,
                    sleep=self._sleep,
                    description=f"vote transfer {signed.tx_hash}",
                )
            except RetryError as exc:
                logger.warning("Vote transfer {} failed after {} attempts", signed.tx_hash, exc.attempts)
                raise TransferFailed(
                    f"Transaction failed after {exc.attempts} attempts",
                    last_error=exc.last_error,
                ) from exc
            except LedgerError as exc:
                logger.warning("Vote transfer {} rejected: {}", signed.tx_hash, exc)
                raise TransferFailed("Vote transfer rejected", last_error=exc) from exc
        return status.tx_hash

    async def _verify_payment(
        self, tx_hash: str, sender: str, destination: str, stake: Decimal
    ) -> TransactionStatus:
        async with self._gateway.connect() as connection:
            status = await connection.lookup_transaction(tx_hash)
        if status is None or not status.succeeded:
            raise UnverifiedTransaction(f"Transaction {tx_hash} is not a validated successful transfer")
        if status.transaction_type != "Payment" or status.account != sender or status.destination != destination:
            raise UnverifiedTransaction(
                f"Transaction {tx_hash} is not a payment from {sender} to {destination}"
            )
        if status.delivered_amount is None:
            raise UnverifiedTransaction(f"Transaction {tx_hash} did not deliver a known XRP amount")
        if status.delivered_amount != stake:
            raise InvalidAmount(
                f"Transaction {tx_hash} delivered {status.delivered_amount} XRP, not {stake}"
            )
        return status


def _receipt(
    option_key: str,
    stake: Decimal,
    sender: str,
    tx_hash: str,
    option: MarketOption,
    *,
    message: str = "Vote processed successfully",
) -> schemas.VoteReceipt:
    return schemas.VoteReceipt(
        message=message,
        transaction_hash=tx_hash,
        vote=schemas.VoteSummary(
            option=option_key,
            amount=stake,
            sender_address=sender,
            transaction_hash=tx_hash,
            total_votes=option.votes,
            total_amount=option.amount,
        ),
    )
