"""
Ledger export.
Builds a human-readable order summary for a paid session and forwards it to the
bookkeeping webhook. Export is best effort; callers log failures and move on.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence
import logging

import httpx

from services.payments import ProcessorLineItem
from settings import ShopSettings, settings as default_settings

logger = logging.getLogger(__name__)


def _token_sort_key(entry: Dict[str, Any]):
    token = str(entry.get("tokenId", ""))
    # Numeric ids sort by value and ahead of any non-numeric ids
    if token.isdigit():
        return (0, int(token), "")
    return (1, 0, token)


def sort_customizations(entries: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(entries, key=_token_sort_key)


def _format_money(cents: Optional[int], currency: str) -> str:
    if cents is None:
        return "-"
    return f"{cents / 100:.2f} {currency.upper()}"


def _format_address(address: Optional[Dict[str, Any]]) -> str:
    if not address:
        return "-"
    parts = [
        address.get("line1"), address.get("line2"), address.get("city"),
        address.get("state"), address.get("postal_code"), address.get("country"),
    ]
    return ", ".join(p for p in parts if p)


def _shipping_details(session: Dict[str, Any]) -> Dict[str, Any]:
    shipping = session.get("shipping_details")
    if not shipping:
        shipping = (session.get("collected_information") or {}).get("shipping_details")
    return shipping or {}


def build_order_summary(
    session: Dict[str, Any],
    line_items: Sequence[ProcessorLineItem],
    customizations: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Assemble the order summary posted to the ledger.

    Returns the structured fields plus a ``text`` rendering for humans.
    """
    currency = session.get("currency") or "usd"
    customer = session.get("customer_details") or {}
    shipping = _shipping_details(session)
    metadata = session.get("metadata") or {}

    lines = [
        {
            "description": item.description or item.product_ref or item.price_ref,
            "priceRef": item.price_ref,
            "productRef": item.product_ref,
            "quantity": item.quantity,
            "amountTotal": item.amount_total,
        }
        for item in line_items
    ]
    entries = sort_customizations((customizations or {}).get("customizations") or [])

    text_lines = [
        f"Order {session.get('id')}",
        f"Customer: {customer.get('name') or '-'} <{customer.get('email') or '-'}>",
        f"Ship to: {shipping.get('name') or customer.get('name') or '-'}, "
        f"{_format_address(shipping.get('address') or customer.get('address'))}",
        f"Total: {_format_money(session.get('amount_total'), currency)}",
        "Items:",
    ]
    text_lines += [
        f"  {line['quantity']} x {line['description']} ({_format_money(line['amountTotal'], currency)})"
        for line in lines
    ]
    if entries:
        text_lines.append("Customizations:")
        text_lines += [
            f"  #{e.get('tokenId')} {e.get('productRef')} [{e.get('variant')}] x{e.get('quantity')}"
            for e in entries
        ]
    if metadata.get("giftIntent") == "true":
        text_lines.append(f"Gift: holder gift for {metadata.get('walletAddress') or '-'}")

    return {
        "sessionId": session.get("id"),
        "customer": {"name": customer.get("name"), "email": customer.get("email")},
        "shipping": {
            "name": shipping.get("name"),
            "address": shipping.get("address") or customer.get("address"),
        },
        "amountTotal": session.get("amount_total"),
        "currency": currency,
        "walletAddress": metadata.get("walletAddress") or None,
        "giftIntent": metadata.get("giftIntent") == "true",
        "lines": lines,
        "customizations": entries,
        "text": "\n".join(text_lines),
    }


class LedgerExporter:
    def __init__(self, config: Optional[ShopSettings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or default_settings
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.config.ledger_webhook_url)

    async def export(self, summary: Dict[str, Any]) -> bool:
        """POST the summary. Returns False when no endpoint is configured.

        HTTP failures raise ``httpx.HTTPError``.
        """
        if not self.enabled:
            logger.info("[LEDGER] No LEDGER_WEBHOOK_URL; skipping export for %s", summary.get("sessionId"))
            return False
        async with httpx.AsyncClient(
            timeout=self.config.ledger_timeout_seconds, transport=self._transport
        ) as client:
            response = await client.post(self.config.ledger_webhook_url, json=summary)
            response.raise_for_status()
        logger.info("[LEDGER] Exported order %s", summary.get("sessionId"))
        return True


ledger_exporter = LedgerExporter()
