"""
Payment gateway port and adapters.

``StripeGateway`` talks to the processor; ``FakeGateway`` records calls for
development and tests. ``get_gateway()`` / ``set_gateway()`` swap the active
implementation without touching checkout or fulfillment code.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

import stripe

from services.errors import UpstreamError, WebhookSignatureError
from settings import ShopSettings, settings as default_settings

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class CreatedSession:
    id: str
    url: Optional[str]


@dataclass(frozen=True)
class ProcessorLineItem:
    """One line of a paid session as the processor reports it."""
    price_ref: Optional[str]
    quantity: int
    product_ref: Optional[str] = None
    description: Optional[str] = None
    amount_total: Optional[int] = None


@dataclass(frozen=True)
class SessionSummary:
    id: str
    payment_status: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Abstract payment processor interface."""

    @property
    @abstractmethod
    def is_test_mode(self) -> bool:
        ...

    @abstractmethod
    async def create_checkout_session(self, params: Dict[str, Any]) -> CreatedSession:
        """Create a hosted checkout session from processor-format params."""
        ...

    @abstractmethod
    async def list_line_items(self, session_id: str) -> List[ProcessorLineItem]:
        ...

    @abstractmethod
    async def retrieve_session(self, session_id: str) -> SessionSummary:
        ...

    def construct_event(self, payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
        """Verify ``signature`` over ``payload`` with one signing secret.

        Raises WebhookSignatureError when the header does not match.
        """
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        try:
            stripe.WebhookSignature.verify_header(
                text, signature, secret, WEBHOOK_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(str(exc)) from exc
        try:
            event = json.loads(text)
        except ValueError as exc:
            raise WebhookSignatureError("Webhook payload is not valid JSON") from exc
        if not isinstance(event, dict):
            raise WebhookSignatureError("Webhook payload is not an event object")
        return event


def _line_item_from_stripe(item: Any) -> ProcessorLineItem:
    price = item.get("price") or {}
    product = price.get("product") if hasattr(price, "get") else None
    product_ref = None
    if product is not None and hasattr(product, "get"):
        product_ref = (product.get("metadata") or {}).get("product_ref")
    return ProcessorLineItem(
        price_ref=price.get("id") if hasattr(price, "get") else None,
        quantity=int(item.get("quantity") or 0),
        product_ref=product_ref,
        description=item.get("description"),
        amount_total=item.get("amount_total"),
    )


class StripeGateway(PaymentGateway):
    """Stripe adapter. SDK calls are blocking, so they run in a worker thread."""

    def __init__(self, config: Optional[ShopSettings] = None):
        self.config = config or default_settings
        self.api_key = self.config.stripe_secret_key
        stripe.default_http_client = stripe.RequestsClient(
            timeout=self.config.payment_timeout_seconds
        )
        stripe.max_network_retries = 2

    @property
    def is_test_mode(self) -> bool:
        return self.config.is_test_mode

    async def _call(self, operation: str, fn, *args, **kwargs):
        if not self.api_key:
            raise UpstreamError(f"Stripe {operation} attempted without STRIPE_SECRET_KEY")
        try:
            return await asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", operation, exc)
            raise UpstreamError(f"Stripe {operation} failed: {exc}") from exc

    async def create_checkout_session(self, params: Dict[str, Any]) -> CreatedSession:
        session = await self._call("checkout.create", stripe.checkout.Session.create, **params)
        logger.info("Created Stripe checkout session %s", session.id)
        return CreatedSession(id=session.id, url=session.url)

    async def list_line_items(self, session_id: str) -> List[ProcessorLineItem]:
        listing = await self._call(
            "line_items.list",
            stripe.checkout.Session.list_line_items,
            session_id,
            limit=100,
            expand=["data.price.product"],
        )
        return [_line_item_from_stripe(item) for item in listing.data]

    async def retrieve_session(self, session_id: str) -> SessionSummary:
        session = await self._call("session.retrieve", stripe.checkout.Session.retrieve, session_id)
        metadata = dict(session.get("metadata") or {})
        return SessionSummary(
            id=session.id,
            payment_status=session.get("payment_status"),
            metadata=metadata,
        )


class FakeGateway(PaymentGateway):
    """Configurable in-memory gateway."""

    def __init__(self, test_mode: bool = False) -> None:
        self.test_mode = test_mode
        self.should_succeed: bool = True
        self.failure_reason: str = "Processor unavailable"
        self.calls: List[Dict[str, Any]] = []
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.line_items: Dict[str, List[ProcessorLineItem]] = {}

    @property
    def is_test_mode(self) -> bool:
        return self.test_mode

    def configure(self, should_succeed: bool, failure_reason: str = "Processor unavailable") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def add_session(
        self,
        session_id: str,
        line_items: List[ProcessorLineItem],
        metadata: Optional[Dict[str, str]] = None,
        payment_status: str = "paid",
    ) -> None:
        self.line_items[session_id] = list(line_items)
        self.sessions[session_id] = {
            "id": session_id,
            "metadata": dict(metadata or {}),
            "payment_status": payment_status,
        }

    def _check(self) -> None:
        if not self.should_succeed:
            raise UpstreamError(self.failure_reason)

    async def create_checkout_session(self, params: Dict[str, Any]) -> CreatedSession:
        self.calls.append({"method": "create_checkout_session", "params": params})
        self._check()
        session_id = f"cs_fake_{uuid4().hex[:12]}"
        self.sessions[session_id] = {
            "id": session_id,
            "metadata": dict(params.get("metadata") or {}),
            "payment_status": "unpaid",
            "created": int(time.time()),
        }
        return CreatedSession(id=session_id, url=f"https://checkout.test/{session_id}")

    async def list_line_items(self, session_id: str) -> List[ProcessorLineItem]:
        self.calls.append({"method": "list_line_items", "session_id": session_id})
        self._check()
        return list(self.line_items.get(session_id, []))

    async def retrieve_session(self, session_id: str) -> SessionSummary:
        self.calls.append({"method": "retrieve_session", "session_id": session_id})
        self._check()
        session = self.sessions.get(session_id)
        if session is None:
            raise UpstreamError(f"No such checkout session: {session_id}")
        return SessionSummary(
            id=session_id,
            payment_status=session.get("payment_status"),
            metadata=dict(session.get("metadata") or {}),
        )


_current_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    """Return the active gateway, building a StripeGateway on first use."""
    global _current_gateway
    if _current_gateway is None:
        _current_gateway = StripeGateway()
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None
