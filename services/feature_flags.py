"""
Feature Flags & Kill Switches
Storefront switches (checkout, gifts, bundle inventory logic, maintenance mode)
with emergency kill switches. Flag overrides persist in the key-value store.
"""
from typing import Dict, List, Any, Optional
import logging
from datetime import datetime

from services.kv_store import KeyValueStore, kv_store

logger = logging.getLogger(__name__)

FLAGS_KEY = "feature_flags"


class FeatureFlagsManager:
    """Manages feature flags and kill switches for the storefront"""

    def __init__(self, store: Optional[KeyValueStore] = None):
        self.store = store or kv_store

        # Default global feature flags
        self.default_flags = {
            "checkout.enabled": True,
            "gifts.enabled": True,
            "maintenance.mode": False,
            "fulfillment.ledger_export": True,
        }

        self._flag_cache = self.default_flags.copy()

        # Kill switch registry
        self.kill_switches = {
            "emergency.disable_checkout": False,
            "emergency.disable_gifts": False,
        }

        # Flag change history
        self.change_history: List[Dict[str, Any]] = []

    async def initialize_flags(self):
        """Load persisted overrides on top of the defaults"""
        self._flag_cache = self.default_flags.copy()
        try:
            stored = await self.store.get_json(FLAGS_KEY) or {}
        except Exception as e:
            logger.error(f"Error loading feature flags, using defaults: {e}")
            return
        for key, value in (stored.get("flags") or {}).items():
            if key in self._flag_cache:
                self._flag_cache[key] = bool(value)
        for key, value in (stored.get("kill_switches") or {}).items():
            if key in self.kill_switches:
                self.kill_switches[key] = bool(value)
        logger.info("Feature flags initialized successfully")

    def get_flag(self, flag_key: str, default: bool = False) -> bool:
        """Get feature flag value, honouring kill switches"""
        if self._is_killed_by_emergency_switch(flag_key):
            return False
        return self._flag_cache.get(flag_key, default)

    def get_all_flags(self) -> Dict[str, Any]:
        all_flags = self._flag_cache.copy()
        for flag_key in all_flags:
            if self._is_killed_by_emergency_switch(flag_key):
                all_flags[flag_key] = False
        return all_flags

    def checkout_enabled(self) -> bool:
        return self.get_flag("checkout.enabled") and not self._flag_cache.get("maintenance.mode", False)

    def gifts_enabled(self) -> bool:
        return self.get_flag("gifts.enabled")

    async def set_flag(self, flag_key: str, value: bool, updated_by: str = "system") -> bool:
        """Set feature flag value"""
        if flag_key not in self.default_flags:
            logger.warning(f"Unknown flag key: {flag_key}")
            return False

        self._flag_cache[flag_key] = value
        await self._persist()
        self._record_flag_change(flag_key, value, updated_by)
        logger.info(f"Set flag {flag_key}={value} by {updated_by}")
        return True

    async def activate_kill_switch(self, kill_switch: str, activated_by: str = "system") -> bool:
        """Activate emergency kill switch"""
        if kill_switch not in self.kill_switches:
            logger.warning(f"Unknown kill switch: {kill_switch}")
            return False

        self.kill_switches[kill_switch] = True
        logger.critical(f"KILL SWITCH ACTIVATED: {kill_switch} by {activated_by}")
        self._record_flag_change(kill_switch, True, activated_by)
        await self._persist()
        return True

    async def deactivate_kill_switch(self, kill_switch: str, deactivated_by: str = "system") -> bool:
        """Deactivate emergency kill switch"""
        if kill_switch not in self.kill_switches:
            logger.warning(f"Unknown kill switch: {kill_switch}")
            return False

        self.kill_switches[kill_switch] = False
        logger.warning(f"Kill switch deactivated: {kill_switch} by {deactivated_by}")
        self._record_flag_change(kill_switch, False, deactivated_by)
        await self._persist()
        return True

    def get_flag_diagnostics(self) -> Dict[str, Any]:
        active_kill_switches = [k for k, v in self.kill_switches.items() if v]
        enabled_flags = sum(1 for v in self._flag_cache.values() if v)
        return {
            "flag_summary": {
                "total_flags": len(self._flag_cache),
                "enabled_flags": enabled_flags,
                "disabled_flags": len(self._flag_cache) - enabled_flags,
            },
            "kill_switches": {
                "total_switches": len(self.kill_switches),
                "active_switches": len(active_kill_switches),
                "active_switch_names": active_kill_switches,
            },
            "recent_changes": self.change_history[-10:],
            "system_status": self._get_system_status(),
        }

    # Private helper methods

    async def _persist(self):
        try:
            await self.store.set_json(
                FLAGS_KEY,
                {"flags": self._flag_cache, "kill_switches": self.kill_switches},
            )
        except Exception as e:
            # The in-memory value still applies to this instance
            logger.error(f"Could not persist feature flags: {e}")

    def _is_killed_by_emergency_switch(self, flag_key: str) -> bool:
        if self.kill_switches.get("emergency.disable_checkout") and flag_key.startswith("checkout."):
            return True
        if self.kill_switches.get("emergency.disable_gifts") and flag_key.startswith("gifts."):
            return True
        return False

    def _record_flag_change(self, flag_key: str, value: bool, updated_by: str):
        self.change_history.append({
            "timestamp": datetime.now().isoformat(),
            "flag_key": flag_key,
            "new_value": value,
            "updated_by": updated_by,
        })
        # Keep only last 100 changes
        if len(self.change_history) > 100:
            self.change_history = self.change_history[-100:]

    def _get_system_status(self) -> str:
        if any(self.kill_switches.values()):
            return "emergency_mode"
        if self._flag_cache.get("maintenance.mode"):
            return "maintenance"
        if not self.get_flag("checkout.enabled"):
            return "checkout_disabled"
        return "operational"


# Global feature flags manager instance
feature_flags = FeatureFlagsManager()
