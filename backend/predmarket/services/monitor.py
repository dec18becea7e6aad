"""Watch collection addresses and reconcile incoming payments into the store."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable

from loguru import logger

from predmarket.domain import IncomingPayment
from predmarket.models import PaymentSource

from .ledger.base import LedgerGateway, LedgerSubscription
from .ledger.units import xrp_to_drops
from .market_store import MarketStore

IncomingCallback = Callable[[IncomingPayment], Awaitable[None]]


class IncomingTransferMonitor:
    """Consume gateway events from one channel and dispatch them per address.

    Ledger I/O happens in the gateway's subscription tasks; this class only
    reads the channel, so a slow market write never stalls the ledger side.
    """

    def __init__(self, gateway: LedgerGateway, store: MarketStore) -> None:
        self._gateway = gateway
        self._store = store
        self._channel: asyncio.Queue[IncomingPayment] = asyncio.Queue()
        self._subscriptions: dict[str, LedgerSubscription] = {}
        self._callbacks: dict[str, IncomingCallback] = {}
        self._consumer: asyncio.Task[None] | None = None
        self._watch_lock = asyncio.Lock()

    @property
    def watched_addresses(self) -> list[str]:
        return list(self._subscriptions)

    async def watch(self, address: str, on_incoming: IncomingCallback | None = None) -> bool:
        """Subscribe to ``address``; returns False if it is already watched."""

        async with self._watch_lock:
            if address in self._subscriptions:
                logger.debug("Address {} already monitored", address)
                return False
            self._subscriptions[address] = await self._gateway.subscribe(address, self._channel)
            self._callbacks[address] = on_incoming or self.reconcile
        self._ensure_consumer()
        logger.info("Started monitoring address {}", address)
        return True

    async def start(self, addresses: Iterable[str]) -> None:
        for address in addresses:
            await self.watch(address)

    async def reconcile(self, payment: IncomingPayment) -> None:
        """Record ``payment`` against the option that owns its destination."""

        if payment.amount <= 0:
            logger.warning("Ignoring payment {} with non-positive amount {}", payment.tx_hash, payment.amount)
            return

        async with self._store.writer() as writer:
            option = writer.markets.option_by_address(payment.destination)
            if option is None:
                logger.warning(
                    "Ignoring payment {} to unknown address {}", payment.tx_hash, payment.destination
                )
                return
            option_key = option.option_id
            record = writer.markets.record_payment(
                option,
                sender=payment.sender,
                amount_drops=xrp_to_drops(payment.amount),
                tx_hash=payment.tx_hash,
                timestamp=payment.timestamp,
                source=PaymentSource.MONITOR,
            )
        if record is None:
            logger.debug("Payment {} already recorded", payment.tx_hash)
        else:
            logger.info(
                "Reconciled incoming payment {} option={} sender={} amount={}",
                payment.tx_hash,
                option_key,
                payment.sender,
                payment.amount,
            )

    async def drain(self) -> None:
        """Wait until every queued payment has been dispatched."""

        await self._channel.join()

    async def close(self) -> None:
        for address, subscription in list(self._subscriptions.items()):
            try:
                await subscription.close()
            except Exception:  # noqa: BLE001
                logger.exception("Failed to close subscription for {}", address)
            self._subscriptions.pop(address, None)
        self._callbacks.clear()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

    def _ensure_consumer(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="incoming-transfer-monitor")

    async def _consume(self) -> None:
        while True:
            payment = await self._channel.get()
            try:
                callback = self._callbacks.get(payment.destination)
                if callback is None:
                    logger.warning("No watcher for payment {} to {}", payment.tx_hash, payment.destination)
                else:
                    await callback(payment)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to handle incoming payment {}", payment.tx_hash)
            finally:
                self._channel.task_done()
