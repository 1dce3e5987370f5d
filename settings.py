"""
Centralized configuration for the storefront checkout and fulfillment pipeline.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_PRODUCTION_ORIGINS: tuple[str, ...] = (
    "https://genmerch.xyz",
    "https://www.genmerch.xyz",
)

DOMESTIC_COUNTRIES: tuple[str, ...] = ("US",)
INTERNATIONAL_COUNTRIES: tuple[str, ...] = (
    "CA", "AU", "GB", "DE", "KR", "JP", "MX", "TH", "NZ", "SG", "HU",
)


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _json_map(name: str, raw: Optional[str]) -> Dict[str, str]:
    """Parse a JSON object env var, ignoring (and logging) malformed values."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.error("Ignoring malformed JSON in %s", name)
        return {}
    if not isinstance(parsed, dict):
        logger.error("Ignoring %s: expected a JSON object", name)
        return {}
    return {str(k): str(v) for k, v in parsed.items()}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using %s", name, raw, default)
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%r, using %s", name, raw, default)
        return default


@dataclass(frozen=True)
class ShippingRates:
    """2x2 shipping table plus the legacy single rate."""
    small_domestic: Optional[str] = None
    large_domestic: Optional[str] = None
    small_international: Optional[str] = None
    large_international: Optional[str] = None
    legacy: Optional[str] = None


@dataclass(frozen=True)
class ShopSettings:
    stripe_secret_key: str = ""
    stripe_mode: str = "live"
    webhook_secrets: Tuple[str, ...] = ()
    test_price_map: Dict[str, str] = field(default_factory=dict)
    test_shipping_rate_map: Dict[str, str] = field(default_factory=dict)
    shipping_rates: ShippingRates = field(default_factory=ShippingRates)

    gift_price_id: Optional[str] = None
    gift_coupon_id: Optional[str] = None
    gift_cap: int = 50
    gift_min_subtotal: Decimal = Decimal("10.00")

    min_custom_qty: int = 5
    large_order_threshold: int = 10
    customization_ttl_seconds: int = 60 * 60 * 24 * 30
    currency: str = "usd"

    production_origins: Tuple[str, ...] = DEFAULT_PRODUCTION_ORIGINS
    site_url: str = "http://localhost:3000"

    eth_rpc_url: Optional[str] = None
    holder_contract: str = "0x23581767a106ae21c074b2276d25e5c3e136a68b"
    force_holder: bool = False

    ledger_webhook_url: Optional[str] = None

    payment_timeout_seconds: float = 10.0
    chain_rpc_timeout_seconds: float = 8.0
    ledger_timeout_seconds: float = 5.0

    @property
    def is_test_mode(self) -> bool:
        return self.stripe_mode == "test"

    @property
    def gift_configured(self) -> bool:
        return bool(self.gift_price_id and self.gift_coupon_id)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ShopSettings":
        env = os.environ if env is None else env

        # STRIPE_WEBHOOK_SECRETS takes a comma-separated list so test and live
        # secrets can be active at the same time during rotation.
        secrets = _split_csv(env.get("STRIPE_WEBHOOK_SECRETS"))
        if not secrets:
            secrets = _split_csv(env.get("STRIPE_WEBHOOK_SECRET"))

        origins = _split_csv(env.get("PRODUCTION_ORIGINS")) or DEFAULT_PRODUCTION_ORIGINS

        return cls(
            stripe_secret_key=env.get("STRIPE_SECRET_KEY", ""),
            stripe_mode=(env.get("STRIPE_MODE") or "live").strip().lower(),
            webhook_secrets=secrets,
            test_price_map=_json_map("STRIPE_TEST_PRICE_MAP", env.get("STRIPE_TEST_PRICE_MAP")),
            test_shipping_rate_map=_json_map(
                "STRIPE_TEST_SHIPPING_RATE_MAP", env.get("STRIPE_TEST_SHIPPING_RATE_MAP")
            ),
            shipping_rates=ShippingRates(
                small_domestic=env.get("STRIPE_SHIP_SMALL_DOMESTIC") or None,
                large_domestic=env.get("STRIPE_SHIP_LARGE_DOMESTIC") or None,
                small_international=env.get("STRIPE_SHIP_SMALL_INTL") or None,
                large_international=env.get("STRIPE_SHIP_LARGE_INTL") or None,
                legacy=env.get("STRIPE_SHIPPING_RATE_ID") or None,
            ),
            gift_price_id=env.get("STRIPE_GIFT_PRICE_ID") or None,
            gift_coupon_id=env.get("STRIPE_GIFT_COUPON_ID") or None,
            gift_cap=_env_int(env, "GIFT_CAP", 50),
            gift_min_subtotal=Decimal(str(_env_float(env, "GIFT_MIN_SUBTOTAL", 10.0))),
            min_custom_qty=_env_int(env, "MIN_CUSTOM_QTY", 5),
            large_order_threshold=_env_int(env, "LARGE_ORDER_THRESHOLD", 10),
            customization_ttl_seconds=_env_int(
                env, "CUSTOMIZATION_TTL_SECONDS", 60 * 60 * 24 * 30
            ),
            production_origins=origins,
            site_url=env.get("NEXT_PUBLIC_SITE_URL") or "http://localhost:3000",
            eth_rpc_url=env.get("ETH_MAINNET_RPC") or None,
            holder_contract=(
                env.get("HOLDER_CONTRACT_ADDRESS")
                or "0x23581767a106ae21c074b2276d25e5c3e136a68b"
            ),
            force_holder=(env.get("FORCE_HOLDER", "false").lower() == "true"),
            ledger_webhook_url=env.get("LEDGER_WEBHOOK_URL") or None,
            payment_timeout_seconds=_env_float(env, "PAYMENT_TIMEOUT_SECONDS", 10.0),
            chain_rpc_timeout_seconds=_env_float(env, "CHAIN_RPC_TIMEOUT_SECONDS", 8.0),
            ledger_timeout_seconds=_env_float(env, "LEDGER_TIMEOUT_SECONDS", 5.0),
        )

    def is_production_origin(self, origin: Optional[str]) -> bool:
        if not origin:
            return False
        return any(origin.startswith(live) for live in self.production_origins)

    def map_test_price(self, price_id: str) -> str:
        return self.test_price_map.get(price_id, price_id)

    def live_price_for(self, price_id: Optional[str]) -> Optional[str]:
        """Reverse of map_test_price: the live price id a test price id stands in for."""
        if not price_id:
            return None
        for live, test in self.test_price_map.items():
            if test == price_id:
                return live
        return None

    def map_test_shipping_rate(self, rate_id: str) -> str:
        return self.test_shipping_rate_map.get(rate_id, rate_id)


settings = ShopSettings.from_env()
