from __future__ import annotations

import asyncio
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from predmarket.core.config import Settings
from predmarket.db import build_session_factory, init_db
from predmarket.domain import IncomingPayment
from predmarket.models import PaymentSource
from predmarket.services.ledger.base import (
    SUCCESS_CODE,
    AccountInfo,
    PaymentRequest,
    SignedTransaction,
    SubmitResult,
    TransactionStatus,
)
from predmarket.services.ledger.units import xrp_to_drops
from predmarket.services.market_store import MarketStore, configured_options, market_end_time

YES_ADDRESS = "rPEPPER7kfTD9w2To4CQk6UCfuHM9c6GDY"
NO_ADDRESS = "rN7n7otQDd6FczFgLdSqtcsAUxDkw6fzRH"
TREASURY_ADDRESS = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
ADMIN_TOKEN = "let-me-resolve"


class FakeLedgerConnection:
    def __init__(self, gateway: "FakeLedgerGateway") -> None:
        self._gateway = gateway

    async def account_info(self, address: str) -> AccountInfo:
        gateway = self._gateway
        await gateway.run_hook("account_info")
        return AccountInfo(
            address=address,
            balance=gateway.balances.get(address, Decimal("0")),
            sequence=gateway.sequences.get(address, 1),
        )

    async def validated_ledger_index(self) -> int:
        return self._gateway.ledger_index

    async def sign_payment(self, secret: str, payment: PaymentRequest) -> SignedTransaction:
        gateway = self._gateway
        gateway.signed.append((secret, payment))
        tx_hash = f"HASH{len(gateway.signed):04d}"
        gateway.payments[tx_hash] = payment
        return SignedTransaction(tx_blob=f"BLOB-{tx_hash}", tx_hash=tx_hash)

    async def submit(self, signed: SignedTransaction) -> SubmitResult:
        gateway = self._gateway
        await gateway.run_hook("submit")
        gateway.submitted.append(signed.tx_hash)
        payment = gateway.payments[signed.tx_hash]
        scripted = gateway.scripted_results.get(payment.destination)
        if scripted:
            code = scripted.pop(0)
        elif payment.destination in gateway.failing_destinations:
            code = "tecNO_DST_INSUF_XRP"
        else:
            code = SUCCESS_CODE
        if code == SUCCESS_CODE and signed.tx_hash not in gateway.transactions:
            gateway.transactions[signed.tx_hash] = TransactionStatus(
                tx_hash=signed.tx_hash,
                validated=True,
                result_code=SUCCESS_CODE,
                ledger_index=gateway.ledger_index + 1,
                transaction_type="Payment",
                account=payment.account,
                destination=payment.destination,
                delivered_amount=payment.amount,
            )
            if payment.account in gateway.balances:
                gateway.balances[payment.account] -= payment.amount
            gateway.sequences[payment.account] = gateway.sequences.get(payment.account, 1) + 1
        return SubmitResult(tx_hash=signed.tx_hash, engine_result=code)

    async def lookup_transaction(self, tx_hash: str) -> TransactionStatus | None:
        self._gateway.lookups.append(tx_hash)
        return self._gateway.transactions.get(tx_hash)


class FakeSubscription:
    def __init__(self, gateway: "FakeLedgerGateway", address: str, channel: asyncio.Queue) -> None:
        self._gateway = gateway
        self.address = address
        self.channel = channel
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakeLedgerGateway:
    """In-memory ledger double that records every call."""

    name = "fake"

    def __init__(self) -> None:
        self.balances: dict[str, Decimal] = {}
        self.sequences: dict[str, int] = {}
        self.ledger_index = 1000
        self.signed: list[tuple[str, PaymentRequest]] = []
        self.payments: dict[str, PaymentRequest] = {}
        self.submitted: list[str] = []
        self.lookups: list[str] = []
        self.transactions: dict[str, TransactionStatus] = {}
        self.failing_destinations: set[str] = set()
        self.scripted_results: dict[str, list[str]] = {}
        self.subscriptions: list[FakeSubscription] = []
        self.connections_opened = 0
        self.connections_open = 0
        # one-shot coroutines run when the named connection call is made
        self.hooks: dict[str, list] = {}

    @asynccontextmanager
    async def connect(self):
        self.connections_opened += 1
        self.connections_open += 1
        try:
            yield FakeLedgerConnection(self)
        finally:
            self.connections_open -= 1

    async def subscribe(self, address: str, channel: asyncio.Queue) -> FakeSubscription:
        await asyncio.sleep(0)
        subscription = FakeSubscription(self, address, channel)
        self.subscriptions.append(subscription)
        return subscription

    async def run_hook(self, name: str) -> None:
        pending = self.hooks.get(name)
        if pending:
            await pending.pop(0)()

    async def emit(self, payment: IncomingPayment) -> None:
        for subscription in self.subscriptions:
            if subscription.address == payment.destination and not subscription.closed:
                await subscription.channel.put(payment)

    def paid_destinations(self) -> list[str]:
        return [
            self.payments[tx_hash].destination
            for tx_hash in self.transactions
            if tx_hash in self.payments and self.payments[tx_hash].account == TREASURY_ADDRESS
        ]


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'predmarket.db'}",
        yes_wallet_address=YES_ADDRESS,
        no_wallet_address=NO_ADDRESS,
        admin_secret=ADMIN_TOKEN,
        admin_wallet_address=TREASURY_ADDRESS,
        admin_wallet_secret="sTreasurySecret",
        payout_poll_max_attempts=3,
        monitor_enabled=False,
    )


@pytest.fixture
def gateway() -> FakeLedgerGateway:
    return FakeLedgerGateway()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def store(test_settings):
    engine, session_factory = build_session_factory(test_settings.resolved_database_url)
    init_db(engine)
    market_store = MarketStore(session_factory)
    market_store.bootstrap(
        question=test_settings.prediction_question,
        end_time=market_end_time(test_settings),
        options=configured_options(test_settings),
    )
    yield market_store
    engine.dispose()


@pytest.fixture
def other_process_store(store, test_settings):
    """A second store on the same database with its own engine and lock."""

    engine, session_factory = build_session_factory(test_settings.resolved_database_url)
    yield MarketStore(session_factory)
    engine.dispose()


@pytest.fixture
def stake(store):
    """Record a confirmed stake directly, bypassing the ledger."""

    counter = {"value": 0}

    async def _stake(option_id: str, address: str, amount: str, tx_hash: str | None = None) -> None:
        counter["value"] += 1
        async with store.writer() as writer:
            market = writer.markets.get_market()
            option = writer.markets.get_option(market, option_id)
            writer.markets.record_payment(
                option,
                sender=address,
                amount_drops=xrp_to_drops(Decimal(amount)),
                tx_hash=tx_hash or f"STAKE{counter['value']:04d}",
                timestamp=datetime.now(timezone.utc),
                source=PaymentSource.MONITOR,
            )

    return _stake
