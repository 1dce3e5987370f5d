import asyncio

import pytest

from services.obs.metrics import MetricsCollector


def test_record_tier_fallback_counts_per_product():
    collector = MetricsCollector()

    collector.record_tier_fallback("gappy", 7)
    collector.record_tier_fallback("gappy", 8)
    collector.record_tier_fallback("other", 3)

    assert collector.tier_fallbacks["gappy"] == 2
    assert collector.tier_fallbacks["other"] == 1
    assert collector.recent_tier_fallbacks[-1].quantity == 3


def test_record_fulfillment_counters():
    collector = MetricsCollector()

    summary = {
        "session_id": "cs_1",
        "gift_finalized": True,
        "decrement_failures": [{"product_id": "a"}, {"product_id": "b"}],
        "ledger_error": "timeout",
    }
    collector.record_fulfillment(summary)

    assert collector.fulfillment_counters["gifts_finalized"] == 1
    assert collector.fulfillment_counters["decrement_failures"] == 2
    assert collector.fulfillment_counters["ledger_failures"] == 1
    assert collector.last_fulfillment == summary


def test_unknown_counter_is_ignored():
    collector = MetricsCollector()
    collector.increment("processed")
    collector.increment("bogus")
    assert collector.fulfillment_counters["processed"] == 1
    assert "bogus" not in collector.fulfillment_counters


def test_stage_timer_records_failures_and_reraises():
    collector = MetricsCollector()

    async def scenario():
        async with collector.stage_timer("cs_1", "inventory"):
            pass
        with pytest.raises(RuntimeError):
            async with collector.stage_timer("cs_1", "inventory"):
                raise RuntimeError("boom")

    asyncio.run(scenario())
    diagnostics = collector.get_stage_diagnostics("inventory")
    assert diagnostics["inventory"]["count"] == 2


def test_reset_clears_everything():
    collector = MetricsCollector()
    collector.record_tier_fallback("gappy", 7)
    collector.record_checkout("sessions_created")
    collector.reset()
    summary = collector.get_summary()
    assert summary["tier_fallbacks"] == {}
    assert summary["checkout"]["sessions_created"] == 0
    assert summary["last_fulfillment"] is None
