"""
ledger_gateway.py - Narrow adapter to the external ledger.

The ledger is an unreliable, eventually-consistent oracle. Three calls:

    query_channel(channel_id)            -> ChannelInfo(exists, on_ledger_balance, escrow_amount)
    submit_settlement(channel_id, payout, signer) -> transaction reference
    query_transaction_status(tx_ref)     -> TransactionStatus(validated, success, result)

Read-only queries may be retried with backoff (RetryingLedgerGateway).
Submissions are never retried here: a resubmitted settlement could move
escrow twice.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from wageflow.errors import LedgerUnavailable, SettlementRejected
from wageflow.state_machine import Role

logger = logging.getLogger("ledger")


@dataclass(frozen=True)
class ChannelInfo:
    exists: bool
    on_ledger_balance: float = 0.0
    escrow_amount: Optional[float] = None


@dataclass(frozen=True)
class TransactionStatus:
    validated: bool
    success: bool
    result: str = ""


class LedgerGateway:
    """Contract for ledger access. Implementations raise LedgerUnavailable on I/O failure."""

    async def query_channel(self, channel_id: str) -> ChannelInfo:
        raise NotImplementedError

    async def submit_settlement(
        self, channel_id: str, payout: Optional[float], signer: Role,
    ) -> str:
        """Submit a closing claim. ``payout=None`` omits the balance field entirely."""
        raise NotImplementedError

    async def query_transaction_status(self, tx_ref: str) -> TransactionStatus:
        raise NotImplementedError

    async def close(self):
        pass


class RetryingLedgerGateway(LedgerGateway):
    """Retries read-only queries with exponential backoff; passes submissions through once."""

    def __init__(self, inner: LedgerGateway, attempts: int = 3, base_delay: float = 0.25):
        self._inner = inner
        self._attempts = attempts
        self._base_delay = base_delay

    async def _read(self, what: str, call, *args):
        delay = self._base_delay
        for attempt in range(1, self._attempts + 1):
            try:
                return await call(*args)
            except LedgerUnavailable as e:
                if attempt == self._attempts:
                    logger.warning("Ledger %s failed after %d attempts: %s", what, attempt, e)
                    raise
                logger.debug("Ledger %s attempt %d failed (%s); retrying in %.2fs",
                             what, attempt, e, delay)
                await asyncio.sleep(delay)
                delay *= 2

    async def query_channel(self, channel_id: str) -> ChannelInfo:
        return await self._read("channel query", self._inner.query_channel, channel_id)

    async def submit_settlement(self, channel_id: str, payout: Optional[float], signer: Role) -> str:
        return await self._inner.submit_settlement(channel_id, payout, signer)

    async def query_transaction_status(self, tx_ref: str) -> TransactionStatus:
        return await self._read("transaction query", self._inner.query_transaction_status, tx_ref)

    async def close(self):
        await self._inner.close()


class HttpLedgerGateway(LedgerGateway):
    """Ledger access over HTTP (the simulator's /ledger/* routes or a compatible bridge).

    Reads accept only 200 and 404. Any other reply, or a body missing the
    expected fields, is treated as the ledger being unavailable: a 429 or a
    proxy error page says nothing about the channel.
    """

    def __init__(self, base_url: str = "", timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise LedgerUnavailable(f"Ledger unreachable: {e}") from e

    @staticmethod
    def _unexpected(response: httpx.Response, url: str) -> LedgerUnavailable:
        return LedgerUnavailable(
            f"Ledger returned HTTP {response.status_code}",
            details={"url": url, "status_code": response.status_code},
        )

    @staticmethod
    def _json(response: httpx.Response, url: str) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise LedgerUnavailable("Ledger returned a non-JSON body", details={"url": url}) from e
        if not isinstance(data, dict):
            raise LedgerUnavailable("Ledger returned an unexpected body", details={"url": url})
        return data

    async def query_channel(self, channel_id: str) -> ChannelInfo:
        url = f"/ledger/channels/{channel_id}"
        response = await self._request("GET", url)
        if response.status_code == 404:
            return ChannelInfo(exists=False)
        if response.status_code != 200:
            raise self._unexpected(response, url)
        data = self._json(response, url)
        try:
            return ChannelInfo(
                exists=True,
                on_ledger_balance=float(data.get("balance", 0.0)),
                escrow_amount=float(data["amount"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerUnavailable("Ledger channel entry is malformed", details={"url": url}) from e

    async def submit_settlement(self, channel_id: str, payout: Optional[float], signer: Role) -> str:
        url = "/ledger/settlements"
        body = {"channel_id": channel_id, "signer": Role(signer).value}
        if payout is not None:
            body["balance"] = payout
        response = await self._request("POST", url, json=body)
        if response.status_code == 400:
            data = self._json(response, url)
            raise SettlementRejected(
                data.get("message", "Settlement rejected by ledger"),
                details={"result": data.get("result", ""), "channel_id": channel_id},
            )
        # Anything but an explicit rejection leaves the outcome unknown
        if response.status_code != 200:
            raise self._unexpected(response, url)
        tx_ref = self._json(response, url).get("tx_ref")
        if not isinstance(tx_ref, str) or not tx_ref:
            raise LedgerUnavailable("Ledger accepted the settlement without a reference",
                                    details={"url": url, "channel_id": channel_id})
        return tx_ref

    async def query_transaction_status(self, tx_ref: str) -> TransactionStatus:
        url = f"/ledger/transactions/{tx_ref}"
        response = await self._request("GET", url)
        if response.status_code == 404:
            return TransactionStatus(validated=False, success=False, result="txnNotFound")
        if response.status_code != 200:
            raise self._unexpected(response, url)
        data = self._json(response, url)
        if not isinstance(data.get("validated"), bool) or not isinstance(data.get("success"), bool):
            raise LedgerUnavailable("Ledger transaction status is malformed", details={"url": url})
        return TransactionStatus(
            validated=data["validated"],
            success=data["success"],
            result=str(data.get("result", "")),
        )

    async def close(self):
        await self._client.aclose()
