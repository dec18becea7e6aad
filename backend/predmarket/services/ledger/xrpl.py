"""XRP Ledger adapter speaking rippled JSON-RPC over httpx."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from loguru import logger

from predmarket.domain import IncomingPayment

from .base import (
    AccountInfo,
    LedgerRequestError,
    PaymentRequest,
    SignedTransaction,
    SubmitResult,
    SUCCESS_CODE,
    TransactionStatus,
)
from .units import drops_to_xrp, xrp_to_drops

RIPPLE_EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc)
_ACCOUNT_TX_PAGE_SIZE = 200


def ripple_time_to_datetime(seconds: int | None) -> datetime:
    if seconds is None:
        return datetime.now(timezone.utc)
    return RIPPLE_EPOCH + timedelta(seconds=int(seconds))


def _xrp_drops(value: Any) -> int | None:
    """Return drops for native XRP amounts; issued currencies are objects."""

    if isinstance(value, (str, int)) and str(value).isdigit():
        return int(value)
    return None


class XrplConnection:
    """JSON-RPC session bound to one ``httpx.AsyncClient``."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def request(self, method: str, **params: Any) -> dict[str, Any]:
        payload = {"method": method, "params": [params]}
        try:
            response = await self._client.post("", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise LedgerRequestError("noNetwork", f"{method} request failed: {exc}") from exc
        try:
            body = response.json()
        except ValueError as exc:
            raise LedgerRequestError("invalidResponse", f"{method} returned a non-JSON body") from exc
        result = body.get("result") if isinstance(body, dict) else None
        if not isinstance(result, dict):
            raise LedgerRequestError("invalidResponse", f"{method} returned no result object")
        if result.get("status") == "error" or "error" in result:
            raise LedgerRequestError(
                str(result.get("error") or "unknown"),
                result.get("error_message") or result.get("error_exception"),
            )
        return result

    async def account_info(self, address: str) -> AccountInfo:
        result = await self.request("account_info", account=address, ledger_index="validated")
        account_data = result.get("account_data") or {}
        return AccountInfo(
            address=address,
            balance=drops_to_xrp(account_data.get("Balance", 0)),
            sequence=int(account_data.get("Sequence", 0)),
        )

    async def validated_ledger_index(self) -> int:
        result = await self.request("ledger", ledger_index="validated", transactions=False)
        index = result.get("ledger_index")
        if index is None:
            index = (result.get("ledger") or {}).get("ledger_index")
        return int(index)

    async def sign_payment(self, secret: str, payment: PaymentRequest) -> SignedTransaction:
        tx_json: dict[str, Any] = {
            "TransactionType": "Payment",
            "Account": payment.account,
            "Destination": payment.destination,
            "Amount": str(xrp_to_drops(payment.amount)),
        }
        if payment.destination_tag is not None:
            tx_json["DestinationTag"] = int(payment.destination_tag)
        if payment.sequence is not None:
            tx_json["Sequence"] = payment.sequence
        if payment.last_ledger_sequence is not None:
            tx_json["LastLedgerSequence"] = payment.last_ledger_sequence
        if payment.fee_drops is not None:
            tx_json["Fee"] = str(payment.fee_drops)

        result = await self.request("sign", tx_json=tx_json, secret=secret, offline=False)
        signed_json = result.get("tx_json") or {}
        return SignedTransaction(tx_blob=result["tx_blob"], tx_hash=signed_json["hash"])

    async def submit(self, signed: SignedTransaction) -> SubmitResult:
        result = await self.request("submit", tx_blob=signed.tx_blob, fail_hard=False)
        tx_json = result.get("tx_json") or {}
        return SubmitResult(
            tx_hash=tx_json.get("hash") or signed.tx_hash,
            engine_result=str(result.get("engine_result", "")),
            message=result.get("engine_result_message"),
        )

    async def lookup_transaction(self, tx_hash: str) -> TransactionStatus | None:
        try:
            result = await self.request("tx", transaction=tx_hash, binary=False)
        except LedgerRequestError as exc:
            if exc.error == "txnNotFound":
                return None
            raise
        tx_json = result.get("tx_json") or result
        meta = result.get("meta") or {}
        delivered = _xrp_drops(meta.get("delivered_amount"))
        return TransactionStatus(
            tx_hash=result.get("hash") or tx_hash,
            validated=bool(result.get("validated")),
            result_code=meta.get("TransactionResult"),
            ledger_index=result.get("ledger_index"),
            transaction_type=tx_json.get("TransactionType"),
            account=tx_json.get("Account"),
            destination=tx_json.get("Destination"),
            delivered_amount=drops_to_xrp(delivered) if delivered is not None else None,
        )

    async def incoming_payments(
        self, address: str, *, ledger_index_min: int
    ) -> tuple[list[IncomingPayment], int | None]:
        """Return validated XRP payments to ``address`` since ``ledger_index_min``.

        The second element is the highest ledger index covered by the scan so
        the caller can resume after it.
        """

        payments: list[IncomingPayment] = []
        marker: Any = None
        scanned_to: int | None = None
        while True:
            params: dict[str, Any] = {
                "account": address,
                "ledger_index_min": ledger_index_min,
                "ledger_index_max": -1,
                "forward": True,
                "limit": _ACCOUNT_TX_PAGE_SIZE,
            }
            if marker is not None:
                params["marker"] = marker
            result = await self.request("account_tx", **params)
            if result.get("ledger_index_max") is not None:
                scanned_to = int(result["ledger_index_max"])
            for entry in result.get("transactions") or []:
                payment = _payment_from_entry(entry, address)
                if payment is not None:
                    payments.append(payment)
            marker = result.get("marker")
            if not marker:
                break
        return payments, scanned_to


def _payment_from_entry(entry: dict[str, Any], address: str) -> IncomingPayment | None:
    tx = entry.get("tx") or entry.get("tx_json") or {}
    meta = entry.get("meta") or {}
    if not entry.get("validated"):
        return None
    if tx.get("TransactionType") != "Payment" or tx.get("Destination") != address:
        return None
    if meta.get("TransactionResult") != SUCCESS_CODE:
        return None
    drops = _xrp_drops(meta.get("delivered_amount", tx.get("Amount", tx.get("DeliverMax"))))
    if drops is None:
        logger.warning("Ignoring non-XRP payment {} to {}", tx.get("hash") or entry.get("hash"), address)
        return None
    return IncomingPayment(
        sender=tx.get("Account", ""),
        destination=address,
        amount=drops_to_xrp(drops),
        tx_hash=tx.get("hash") or entry.get("hash", ""),
        timestamp=ripple_time_to_datetime(tx.get("date")),
        ledger_index=tx.get("ledger_index") or entry.get("ledger_index"),
    )


class ScanWindow:
    """Forward cursor over one address's history and the hashes already pushed.

    Hashes are only remembered for ledgers the cursor has not passed yet.
    """

    def __init__(self, start_index: int) -> None:
        self.cursor = start_index
        self.seen: dict[str, int | None] = {}

    def advance(self, payments: list[IncomingPayment], scanned_to: int | None) -> list[IncomingPayment]:
        fresh = []
        for payment in payments:
            if payment.tx_hash in self.seen:
                continue
            self.seen[payment.tx_hash] = payment.ledger_index
            fresh.append(payment)
        if scanned_to is not None and scanned_to >= self.cursor:
            self.cursor = scanned_to + 1
            self.seen = {
                tx_hash: index
                for tx_hash, index in self.seen.items()
                if index is not None and index >= self.cursor
            }
        return fresh


class XrplSubscription:
    """Background poller pushing incoming payments for one address."""

    def __init__(self, address: str, task: asyncio.Task[None], client: httpx.AsyncClient) -> None:
        self.address = address
        self._task = task
        self._client = client

    async def close(self) -> None:
        self._task.cancel()
        try:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        finally:
            await self._client.aclose()
        logger.info("Stopped monitoring address {}", self.address)


class XrplGateway:
    """Ledger gateway backed by a rippled JSON-RPC endpoint."""

    name = "xrpl"

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = 20.0,
        poll_interval: float = 4.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.rpc_url, timeout=self.timeout, transport=self._transport)

    @contextlib.asynccontextmanager
    async def connect(self) -> AsyncIterator[XrplConnection]:
        client = self._client()
        logger.debug("Opened ledger connection to {}", self.rpc_url)
        try:
            yield XrplConnection(client)
        finally:
            await client.aclose()
            logger.debug("Closed ledger connection to {}", self.rpc_url)

    async def subscribe(
        self, address: str, channel: asyncio.Queue[IncomingPayment]
    ) -> XrplSubscription:
        client = self._client()
        connection = XrplConnection(client)
        try:
            start_index = await connection.validated_ledger_index() + 1
        except Exception:
            await client.aclose()
            raise
        task = asyncio.create_task(
            self._poll_incoming(connection, address, start_index, channel),
            name=f"xrpl-watch-{address}",
        )
        logger.info("Monitoring address {} from ledger {}", address, start_index)
        return XrplSubscription(address, task, client)

    async def _poll_incoming(
        self,
        connection: XrplConnection,
        address: str,
        start_index: int,
        channel: asyncio.Queue[IncomingPayment],
    ) -> None:
        window = ScanWindow(start_index)
        while True:
            try:
                payments, scanned_to = await connection.incoming_payments(
                    address, ledger_index_min=window.cursor
                )
            except LedgerRequestError as exc:
                logger.warning("Polling {} for incoming payments failed: {}", address, exc)
            except Exception:  # noqa: BLE001
                logger.exception("Unexpected error polling {} for incoming payments", address)
            else:
                for payment in window.advance(payments, scanned_to):
                    logger.info(
                        "Incoming payment {} from {} to {} amount={}",
                        payment.tx_hash,
                        payment.sender,
                        address,
                        payment.amount,
                    )
                    await channel.put(payment)
            await asyncio.sleep(self.poll_interval)


__all__ = ["ScanWindow", "XrplConnection", "XrplGateway", "XrplSubscription", "ripple_time_to_datetime"]
