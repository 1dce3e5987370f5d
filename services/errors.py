"""
Error taxonomy for checkout and fulfillment.

Every error carries an HTTP status, a machine-readable code and optional
numeric context. ``main.py`` renders them; only ``UpstreamError`` hides its
message from callers.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ShopError(Exception):
    status_code = 400
    default_code = "BAD_REQUEST"
    expose_message = True

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = dict(context or {})

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.message if self.expose_message else self.public_message,
            "code": self.code,
        }
        if self.expose_message:
            payload.update(self.context)
        return payload

    @property
    def public_message(self) -> str:
        return self.message


class ValidationError(ShopError):
    """Malformed or missing cart fields."""
    default_code = "VALIDATION_ERROR"


class BusinessRuleError(ShopError):
    """Well-formed cart that violates a storefront rule (minimums, tokens)."""
    default_code = "BUSINESS_RULE"


class SecurityGuardError(ShopError):
    default_code = "SECURITY_GUARD"


class CheckoutDisabledError(ShopError):
    status_code = 503
    default_code = "CHECKOUT_DISABLED"


class UpstreamError(ShopError):
    """Payment processor, chain RPC or store failure."""
    status_code = 500
    default_code = "UPSTREAM_ERROR"
    expose_message = False
    default_public_message = "Unexpected error creating checkout session"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        public_message: Optional[str] = None,
    ):
        super().__init__(message, code=code, context=context)
        self._public_message = public_message

    @property
    def public_message(self) -> str:
        return self._public_message or self.default_public_message


class WebhookSignatureError(ShopError):
    default_code = "BAD_SIGNATURE"
    expose_message = False

    @property
    def public_message(self) -> str:
        return "Bad signature"
