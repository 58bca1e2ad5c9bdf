"""Lightning address (LUD-16) resolution to BOLT11 invoices."""

import logging
import math
import re
from typing import Protocol

import httpx

from stashu_engine.common.exceptions import AmountOutOfRangeError, LightningAddressError

logger = logging.getLogger(__name__)

LN_ADDRESS_RE = re.compile(r"^[a-z0-9._+-]+@[a-z0-9.-]+\.[a-z]{2,}$", re.IGNORECASE)


def is_valid_address(address: str) -> bool:
    return bool(address) and LN_ADDRESS_RE.match(address) is not None


class InvoiceResolver(Protocol):
    async def resolve(self, address: str, amount_sats: int) -> str: ...


class LightningAddressResolver:
    """Fetches an invoice for ``amount_sats`` from ``user@domain``'s LNURL-pay endpoint."""

    def __init__(self, timeout: float = 15.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport, follow_redirects=True,
        )

    async def resolve(self, address: str, amount_sats: int) -> str:
        parts = address.split("@")
        if len(parts) != 2 or not all(parts):
            raise LightningAddressError("Invalid Lightning address format. Expected user@domain.com")
        user, domain = parts
        amount_msats = amount_sats * 1000

        async with self._client() as client:
            meta = await self._get_json(
                client, f"https://{domain}/.well-known/lnurlp/{user}", "resolve Lightning address",
            )
            if meta.get("tag") != "payRequest":
                raise LightningAddressError("Invalid Lightning address: not a pay request endpoint")

            try:
                callback = meta["callback"]
                min_sendable = int(meta["minSendable"])
                max_sendable = int(meta["maxSendable"])
            except (KeyError, TypeError, ValueError) as exc:
                raise LightningAddressError(f"Malformed LNURL-pay metadata: {exc}") from exc

            if amount_msats < min_sendable or amount_msats > max_sendable:
                raise AmountOutOfRangeError(
                    amount_sats,
                    math.ceil(min_sendable / 1000),
                    math.floor(max_sendable / 1000),
                )

            separator = "&" if "?" in callback else "?"
            data = await self._get_json(
                client, f"{callback}{separator}amount={amount_msats}", "get invoice from Lightning address",
            )

        invoice = data.get("pr")
        if not invoice:
            raise LightningAddressError("Lightning address did not return an invoice")
        logger.debug("Resolved %s for %d sats", address, amount_sats)
        return invoice

    @staticmethod
    async def _get_json(client: httpx.AsyncClient, url: str, action: str) -> dict:
        try:
            resp = await client.get(url)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise LightningAddressError(
                f"Could not {action}: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise LightningAddressError(f"Could not {action}: {exc}") from exc
        except ValueError as exc:
            raise LightningAddressError(f"Could not {action}: invalid JSON") from exc

        if not isinstance(data, dict):
            raise LightningAddressError(f"Could not {action}: unexpected response")
        if data.get("status") == "ERROR":
            raise LightningAddressError(data.get("reason") or f"Could not {action}")
        return data
