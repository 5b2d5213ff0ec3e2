"""
Circuit Breaker Models
Crash history, decisions and observability snapshot for CircuitBreaker.
Timestamps are epoch seconds from the breaker's clock.
"""
from typing import List, Optional

from pydantic import BaseModel, Field


class CrashRecord(BaseModel):
    timestamp: float
    error_hash: str
    message: str
    type: str


class CircuitBreakerState(BaseModel):
    crash_history: List[CrashRecord] = Field(default_factory=list)
    tripped: bool = False
    trip_reason: Optional[str] = None
    trip_time: Optional[float] = None
    total_attempted: int = 0
    total_blocked: int = 0


class RepairDecision(BaseModel):
    allowed: bool
    reason: Optional[str] = None


class CircuitStats(BaseModel):
    total_attempted: int
    total_blocked: int
    success_rate: float
    tripped: bool
    recent_crash_count: int
    trip_reason: Optional[str] = None
    cooldown_remaining_seconds: int = 0
    enabled: bool = True
