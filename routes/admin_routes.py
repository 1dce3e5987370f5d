"""
Admin API Routes for Feature Flags, Kill Switches and Pipeline Metrics
"""
from fastapi import APIRouter, HTTPException, Depends, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import Dict, Any, Optional
import logging
import os

from services.feature_flags import feature_flags
from services.fulfillment import failures_key
from services.gift import gift_service
from services.kv_store import kv_store
from services.obs.metrics import metrics_collector

logger = logging.getLogger(__name__)

# Security for admin endpoints
security = HTTPBearer()

class AdminAuth:
    """Simple admin authentication"""

    @staticmethod
    def verify_admin_key(credentials: HTTPAuthorizationCredentials = Security(security)):
        """Verify admin API key"""
        expected_key = os.getenv("ADMIN_API_KEY", "admin-dev-key-change-in-production")

        if not credentials or credentials.credentials != expected_key:
            raise HTTPException(
                status_code=401,
                detail="Invalid admin API key",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return credentials.credentials

# Request/Response models
class FlagUpdateRequest(BaseModel):
    value: bool
    updated_by: str = "api"

class KillSwitchRequest(BaseModel):
    activated_by: str = "api"

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(AdminAuth.verify_admin_key)])

# Feature Flags Endpoints

@router.get("/flags")
async def get_all_feature_flags() -> Dict[str, Any]:
    """Get all feature flags with diagnostics"""
    return {
        "flags": feature_flags.get_all_flags(),
        "kill_switches": dict(feature_flags.kill_switches),
        "diagnostics": feature_flags.get_flag_diagnostics(),
    }

@router.put("/flags/{flag_key}")
async def set_feature_flag(flag_key: str, request: FlagUpdateRequest) -> Dict[str, Any]:
    """Set a feature flag value"""
    success = await feature_flags.set_flag(flag_key, request.value, request.updated_by)
    if not success:
        raise HTTPException(status_code=400, detail=f"Unknown flag: {flag_key}")
    return {
        "success": True,
        "flag_key": flag_key,
        "value": request.value,
        "updated_by": request.updated_by,
    }

# Kill Switch Endpoints

@router.post("/kill-switches/{switch_name}/activate")
async def activate_kill_switch(switch_name: str, request: KillSwitchRequest) -> Dict[str, Any]:
    """Activate an emergency kill switch"""
    success = await feature_flags.activate_kill_switch(switch_name, request.activated_by)
    if not success:
        raise HTTPException(status_code=400, detail=f"Unknown kill switch: {switch_name}")
    return {
        "success": True,
        "kill_switch": switch_name,
        "activated_by": request.activated_by,
        "message": f"Kill switch {switch_name} activated",
    }

@router.post("/kill-switches/{switch_name}/deactivate")
async def deactivate_kill_switch(switch_name: str, request: KillSwitchRequest) -> Dict[str, Any]:
    """Deactivate an emergency kill switch"""
    success = await feature_flags.deactivate_kill_switch(switch_name, request.activated_by)
    if not success:
        raise HTTPException(status_code=400, detail=f"Unknown kill switch: {switch_name}")
    return {
        "success": True,
        "kill_switch": switch_name,
        "deactivated_by": request.activated_by,
        "message": f"Kill switch {switch_name} deactivated",
    }

# Metrics and Monitoring Endpoints

@router.get("/metrics")
async def get_pipeline_metrics() -> Dict[str, Any]:
    """Pipeline counters and last fulfillment summary"""
    return metrics_collector.get_summary()

@router.get("/metrics/stages")
async def get_stage_diagnostics(stage_name: Optional[str] = None) -> Dict[str, Any]:
    """Per-stage fulfillment timings"""
    return {
        "stage_diagnostics": metrics_collector.get_stage_diagnostics(stage_name),
        "stage_filter": stage_name,
    }

@router.get("/gifts")
async def get_gift_counter() -> Dict[str, Any]:
    """Global gift counter against the configured cap"""
    status = await gift_service.status(None)
    return {
        "claimed": status.claimed_count,
        "remaining": status.remaining,
        "cap": gift_service.config.gift_cap,
        "available": status.available,
    }

@router.get("/fulfillment-failures/{session_id}")
async def get_fulfillment_failures(session_id: str) -> Dict[str, Any]:
    """Recorded decrement failures for one session, for manual reconciliation"""
    record = await kv_store.get_json(failures_key(session_id))
    if record is None:
        raise HTTPException(status_code=404, detail="No failures recorded for session")
    return record

# System Health and Status

@router.get("/health")
async def get_system_health() -> Dict[str, Any]:
    """Get overall system health status"""
    flag_diagnostics = feature_flags.get_flag_diagnostics()
    summary = metrics_collector.get_summary()

    health_status = "healthy"
    issues = []
    if flag_diagnostics.get("system_status") != "operational":
        health_status = "degraded"
        issues.append(f"Feature flags: {flag_diagnostics.get('system_status')}")
    counters = summary["fulfillment"]
    if counters["decrement_failures"]:
        if health_status == "healthy":
            health_status = "warning"
        issues.append(f"{counters['decrement_failures']} inventory decrement failures need reconciliation")
    if summary["tier_fallbacks"]:
        issues.append(f"Tier table gaps hit for: {sorted(summary['tier_fallbacks'])}")

    return {
        "status": health_status,
        "issues": issues,
        "timestamp": summary["timestamp"],
        "components": {
            "feature_flags": flag_diagnostics.get("system_status", "unknown"),
            "fulfillment": counters,
        },
    }
