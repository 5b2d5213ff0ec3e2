"""
Telemetry Event Model
Fire-and-forget event handed to a TelemetrySink.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

# Event types
CRASH_REPAIRED = "CRASH_REPAIRED"
REPAIR_FAILED = "REPAIR_FAILED"
REPAIR_REJECTED = "REPAIR_REJECTED"
PHOENIX_BRANCH_CREATED = "PHOENIX_BRANCH_CREATED"
PHOENIX_FIX_COMMITTED = "PHOENIX_FIX_COMMITTED"
PHOENIX_REBUILD_TRIGGERED = "PHOENIX_REBUILD_TRIGGERED"
PHOENIX_PR_CREATED = "PHOENIX_PR_CREATED"
CIRCUIT_BREAKER_TRIPPED = "CIRCUIT_BREAKER_TRIPPED"


class TelemetryEvent(BaseModel):
    type: str
    success: Optional[bool] = None
    error_signature: Optional[str] = None
    session_id: Optional[str] = None
    duration_ms: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
