"""
Holder check against the collection contract (ERC-721 ``balanceOf``).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from settings import ShopSettings, settings as default_settings

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
BALANCE_OF_SELECTOR = "0x70a08231"


@dataclass(frozen=True)
class HolderStatus:
    is_holder: bool
    reason: Optional[str] = None


def is_valid_address(address: Optional[str]) -> bool:
    return bool(address and ADDRESS_RE.match(address))


def balance_of_calldata(address: str) -> str:
    return BALANCE_OF_SELECTOR + address[2:].lower().rjust(64, "0")


class HolderChecker:
    """Checks collection ownership over JSON-RPC ``eth_call``.

    Any failure reports a non-holder; eligibility never fails open.
    """

    def __init__(self, config: Optional[ShopSettings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or default_settings
        self._transport = transport

    async def balance_of(self, address: str) -> int:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_call",
            "params": [
                {"to": self.config.holder_contract, "data": balance_of_calldata(address)},
                "latest",
            ],
        }
        async with httpx.AsyncClient(
            timeout=self.config.chain_rpc_timeout_seconds, transport=self._transport
        ) as client:
            response = await client.post(self.config.eth_rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        if not isinstance(body, dict):
            raise ValueError(f"RPC response is not an object: {type(body).__name__}")
        if body.get("error"):
            raise ValueError(f"RPC error: {body['error']}")
        result = body.get("result") or "0x0"
        if not isinstance(result, str):
            raise ValueError(f"RPC result is not a hex string: {result!r}")
        return int(result, 16) if result != "0x" else 0

    async def check(self, address: Optional[str]) -> HolderStatus:
        if self.config.force_holder:
            logger.info("FORCE_HOLDER enabled; treating %s as holder", address)
            return HolderStatus(True, "forced")
        if not is_valid_address(address):
            return HolderStatus(False, "bad_address")
        if not self.config.eth_rpc_url:
            logger.warning("ETH_MAINNET_RPC not configured; holder check denied")
            return HolderStatus(False, "no_rpc_env")
        try:
            balance = await self.balance_of(address)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Holder check failed for %s: %s", address, exc)
            return HolderStatus(False, "rpc_error")
        return HolderStatus(balance > 0, "owns_token" if balance > 0 else "zero_balance")


holder_checker = HolderChecker()
