"""
Webhook Fulfillment Processor

Runs a verified payment event through the fulfillment stages:

    RECEIVED -> VERIFIED -> GIFT_FINALIZED -> INVENTORY_DECREMENTED
             -> LEDGER_FORWARDED -> DONE

Only signature verification can stop a run. Every later stage records its
failure on the outcome and the run still ends in DONE, because the payment has
already completed and the processor must get its acknowledgment.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from services.catalog import Product, ProductCatalog, default_catalog
from services.errors import WebhookSignatureError
from services.feature_flags import FeatureFlagsManager, feature_flags as default_flags
from services.gift import GiftEligibilityService, gift_service as default_gift_service
from services.kv_store import KeyValueStore, kv_store
from services.ledger import LedgerExporter, build_order_summary, ledger_exporter as default_ledger
from services.obs.metrics import metrics_collector
from services.payments import PaymentGateway, ProcessorLineItem, get_gateway
from services.storage import InventoryStore, inventory_store as default_inventory
from settings import ShopSettings, settings as default_settings

logger = logging.getLogger(__name__)

SESSION_COMPLETED = "checkout.session.completed"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
FULFILLABLE_EVENTS = frozenset({SESSION_COMPLETED, ASYNC_PAYMENT_SUCCEEDED})


def processed_key(session_id: str) -> str:
    return f"processed:{session_id}"


def failures_key(session_id: str) -> str:
    return f"fulfillment_failures:{session_id}"


class FulfillmentState(str, Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    GIFT_FINALIZED = "gift_finalized"
    INVENTORY_DECREMENTED = "inventory_decremented"
    LEDGER_FORWARDED = "ledger_forwarded"
    DONE = "done"


@dataclass
class DecrementFailure:
    product_id: str
    quantity: int
    reason: str


@dataclass
class FulfillmentOutcome:
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    session_id: Optional[str] = None
    state: FulfillmentState = FulfillmentState.RECEIVED
    transitions: List[FulfillmentState] = field(default_factory=lambda: [FulfillmentState.RECEIVED])
    skipped_reason: Optional[str] = None
    duplicate: bool = False
    gift_finalized: Optional[bool] = None
    gift_error: Optional[str] = None
    decremented: Dict[str, int] = field(default_factory=dict)
    decrement_failures: List[DecrementFailure] = field(default_factory=list)
    ledger_forwarded: bool = False
    ledger_error: Optional[str] = None
    marker_error: Optional[str] = None

    def advance(self, state: FulfillmentState) -> None:
        self.state = state
        self.transitions.append(state)
        logger.info("Fulfillment %s -> %s", self.session_id or self.event_id, state.value)

    def summary(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "session_id": self.session_id,
            "state": self.state.value,
            "skipped_reason": self.skipped_reason,
            "duplicate": self.duplicate,
            "gift_finalized": self.gift_finalized,
            "gift_error": self.gift_error,
            "decremented": dict(self.decremented),
            "decrement_failures": [asdict(f) for f in self.decrement_failures],
            "ledger_forwarded": self.ledger_forwarded,
            "ledger_error": self.ledger_error,
            "marker_error": self.marker_error,
        }


class WebhookFulfillmentProcessor:
    def __init__(
        self,
        catalog: Optional[ProductCatalog] = None,
        config: Optional[ShopSettings] = None,
        gateway: Optional[PaymentGateway] = None,
        store: Optional[KeyValueStore] = None,
        inventory: Optional[InventoryStore] = None,
        gifts: Optional[GiftEligibilityService] = None,
        ledger: Optional[LedgerExporter] = None,
        flags: Optional[FeatureFlagsManager] = None,
    ):
        self.catalog = catalog or default_catalog()
        self.config = config or default_settings
        self._gateway = gateway
        self.store = store or kv_store
        self.inventory = inventory or default_inventory
        self.gifts = gifts or default_gift_service
        self.ledger = ledger or default_ledger
        self.flags = flags or default_flags

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway or get_gateway()

    # ---------- verification ----------

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Check ``signature`` against each configured secret; first match wins."""
        if not self.config.webhook_secrets:
            logger.error("No webhook signing secrets configured; rejecting event")
            raise WebhookSignatureError("No webhook signing secrets configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        last_error: Optional[WebhookSignatureError] = None
        for index, secret in enumerate(self.config.webhook_secrets):
            try:
                event = self.gateway.construct_event(payload, signature, secret)
            except WebhookSignatureError as exc:
                last_error = exc
                continue
            logger.debug("Webhook verified with secret #%s", index)
            return event
        logger.warning("Webhook signature did not match any configured secret: %s", last_error)
        raise WebhookSignatureError("Signature did not match any configured secret")

    async def handle(self, payload: bytes, signature: Optional[str]) -> FulfillmentOutcome:
        event = self.verify(payload, signature)
        return await self.process_event(event)

    # ---------- pipeline ----------

    async def process_event(self, event: Dict[str, Any]) -> FulfillmentOutcome:
        outcome = FulfillmentOutcome(event_id=event.get("id"), event_type=event.get("type"))
        metrics_collector.increment("received")
        outcome.advance(FulfillmentState.VERIFIED)

        session = (event.get("data") or {}).get("object") or {}
        outcome.session_id = session.get("id")

        if outcome.event_type not in FULFILLABLE_EVENTS:
            logger.info("Ignoring webhook event type %s", outcome.event_type)
            return self._finish(outcome, "ignored", skipped_reason="ignored_event_type")
        if not outcome.session_id:
            logger.error("Event %s carries no session id", outcome.event_id)
            return self._finish(outcome, "ignored", skipped_reason="missing_session_id")
        if outcome.event_type == SESSION_COMPLETED and session.get("payment_status") == "unpaid":
            # Delayed payment methods complete the session before the money arrives
            logger.info("Session %s completed unpaid; waiting for async payment", outcome.session_id)
            return self._finish(outcome, "deferred", skipped_reason="payment_unpaid")

        first_delivery = await self.claim_session(outcome)
        metadata = session.get("metadata") or {}

        async with metrics_collector.stage_timer(outcome.session_id, "gift"):
            await self.finalize_gift(metadata, outcome)
        outcome.advance(FulfillmentState.GIFT_FINALIZED)

        line_items: List[ProcessorLineItem] = []
        if first_delivery:
            line_items = await self.fetch_line_items(outcome)
            async with metrics_collector.stage_timer(outcome.session_id, "inventory"):
                await self.decrement_inventory(line_items, outcome)
        else:
            logger.info("Session %s already processed; skipping inventory", outcome.session_id)
        outcome.advance(FulfillmentState.INVENTORY_DECREMENTED)

        if first_delivery:
            async with metrics_collector.stage_timer(outcome.session_id, "ledger"):
                await self.export_ledger(session, line_items, outcome)
        outcome.advance(FulfillmentState.LEDGER_FORWARDED)

        return self._finish(outcome, "duplicates" if outcome.duplicate else "processed")

    def _finish(self, outcome: FulfillmentOutcome, counter: str, skipped_reason: Optional[str] = None) -> FulfillmentOutcome:
        if skipped_reason:
            outcome.skipped_reason = skipped_reason
        outcome.advance(FulfillmentState.DONE)
        metrics_collector.increment(counter)
        metrics_collector.record_fulfillment(outcome.summary())
        logger.info("Fulfillment finished | %s", outcome.summary())
        return outcome

    async def claim_session(self, outcome: FulfillmentOutcome) -> bool:
        """Atomically take the processed marker. Only the winner touches stock."""
        marker = {
            "eventId": outcome.event_id,
            "processedAt": datetime.now(timezone.utc).isoformat(),
        }
        try:
            claimed = await self.store.set_if_absent(
                processed_key(outcome.session_id), str(marker["eventId"] or marker["processedAt"])
            )
        except Exception as exc:
            # Without the marker a decrement could repeat on redelivery, so stock is left alone
            logger.exception("Could not claim processed marker for %s", outcome.session_id)
            outcome.marker_error = str(exc)
            outcome.decrement_failures.append(
                DecrementFailure(product_id="*", quantity=0, reason="marker_unavailable")
            )
            return False
        if not claimed:
            outcome.duplicate = True
            logger.info("Duplicate delivery for session %s", outcome.session_id)
        return claimed

    async def finalize_gift(self, metadata: Dict[str, Any], outcome: FulfillmentOutcome) -> None:
        wallet = (metadata.get("walletAddress") or "").strip().lower()
        if metadata.get("giftIntent") != "true" or not wallet:
            return
        try:
            outcome.gift_finalized = await self.gifts.finalize_claim(wallet, outcome.session_id)
        except Exception as exc:
            logger.exception("Gift finalization failed for %s", outcome.session_id)
            outcome.gift_error = str(exc)

    async def fetch_line_items(self, outcome: FulfillmentOutcome) -> List[ProcessorLineItem]:
        try:
            return await self.gateway.list_line_items(outcome.session_id)
        except Exception as exc:
            logger.exception("Could not list line items for %s", outcome.session_id)
            outcome.decrement_failures.append(
                DecrementFailure(product_id="*", quantity=0, reason=f"line_items_unavailable: {exc}")
            )
            return []

    # ---------- inventory ----------

    def resolve_line_item(self, item: ProcessorLineItem) -> Optional[Product]:
        """Map a billed line back to a catalog product.

        Tries the billed price ref (base or tier), then the live price a
        test-mode price stands in for, then the inline product ref.
        """
        return (
            self.catalog.lookup(item.price_ref)
            or self.catalog.lookup(self.config.live_price_for(item.price_ref))
            or self.catalog.lookup(item.product_ref)
        )

    def decompose(
        self, line_items: List[ProcessorLineItem]
    ) -> Tuple["OrderedDict[str, int]", List[ProcessorLineItem]]:
        """Aggregate (product id, quantity) pairs to decrement, expanding bundles.

        Returns the pairs and the line items that matched no product.
        """
        pairs: "OrderedDict[str, int]" = OrderedDict()
        unresolved: List[ProcessorLineItem] = []
        for item in line_items:
            if item.quantity <= 0:
                continue
            product = self.resolve_line_item(item)
            if product is None:
                unresolved.append(item)
                continue
            for component, qty in self.catalog.expand(product, item.quantity):
                pairs[component.id] = pairs.get(component.id, 0) + qty
        return pairs, unresolved

    async def decrement_inventory(self, line_items: List[ProcessorLineItem], outcome: FulfillmentOutcome) -> None:
        pairs, unresolved = self.decompose(line_items)
        for item in unresolved:
            ref = item.price_ref or item.product_ref or "unknown"
            logger.error("Line item %s (%s) matches no product", ref, item.description)
            outcome.decrement_failures.append(
                DecrementFailure(product_id=ref, quantity=item.quantity, reason="unknown_product")
            )

        # Each pair commits on its own; earlier decrements stand if a later one fails
        for product_id, quantity in pairs.items():
            try:
                updated = await self.inventory.decrement(product_id, quantity)
            except Exception as exc:
                logger.exception("Decrement failed for %s x%s", product_id, quantity)
                outcome.decrement_failures.append(DecrementFailure(product_id, quantity, str(exc)))
                continue
            if updated:
                outcome.decremented[product_id] = quantity
            else:
                outcome.decrement_failures.append(
                    DecrementFailure(product_id, quantity, "no_inventory_row")
                )

        if outcome.decrement_failures:
            await self.record_failures(outcome)

    async def record_failures(self, outcome: FulfillmentOutcome) -> None:
        try:
            await self.store.set_json(
                failures_key(outcome.session_id),
                {
                    "sessionId": outcome.session_id,
                    "eventId": outcome.event_id,
                    "failures": [asdict(f) for f in outcome.decrement_failures],
                    "recordedAt": datetime.now(timezone.utc).isoformat(),
                },
            )
        except Exception:
            logger.exception(
                "Could not persist fulfillment failures for %s: %s",
                outcome.session_id, outcome.decrement_failures,
            )

    # ---------- ledger ----------

    async def load_customizations(self, metadata: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ref = metadata.get("customRef")
        if not ref:
            return None
        try:
            return await self.store.get_json(f"customizations:{ref}")
        except Exception:
            logger.exception("Could not load customizations %s", ref)
            return None

    async def export_ledger(
        self, session: Dict[str, Any], line_items: List[ProcessorLineItem], outcome: FulfillmentOutcome
    ) -> None:
        if not self.flags.get_flag("fulfillment.ledger_export", default=True):
            logger.info("Ledger export disabled; skipping %s", outcome.session_id)
            return
        try:
            customizations = await self.load_customizations(session.get("metadata") or {})
            summary = build_order_summary(session, line_items, customizations)
            outcome.ledger_forwarded = await self.ledger.export(summary)
        except Exception as exc:
            logger.exception("Ledger export failed for %s", outcome.session_id)
            outcome.ledger_error = str(exc)
