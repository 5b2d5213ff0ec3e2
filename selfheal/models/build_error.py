"""
Build Error Model
=================
Typed, confidence-scored error extracted from one log line.

Fields:
    id              — "error_<ms>_<line index>"
    type            — dependency | syntax | config | runtime | network | permission | unknown
    severity        — critical | error | warning | info
    message         — cleaned log line (ANSI codes + leading timestamps removed)
    file/line/column — locator, when the line carries one
    stack           — following stack-trace lines, newline joined
    confidence      — 0–100
    suggested_fix   — rule-table advice
    context         — command, exit code, surrounding log lines, last operation

BuildError is frozen: it is created once by ErrorClassifier and read by
everything downstream during one diagnosis cycle.
"""
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ErrorType = Literal["dependency", "syntax", "config", "runtime", "network", "permission", "unknown"]
Severity = Literal["critical", "error", "warning", "info"]


class ErrorContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    command: Optional[str] = None
    exit_code: Optional[int] = None
    logs: List[str] = Field(default_factory=list)
    last_operation: str = ""


class BuildError(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: ErrorType
    severity: Severity
    message: str
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    stack: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    confidence: int = Field(default=50, ge=0, le=100)
    suggested_fix: Optional[str] = None
    context: ErrorContext = Field(default_factory=ErrorContext)


class BuildSummary(BaseModel):
    total_errors: int = 0
    total_warnings: int = 0
    error_types: Dict[str, int] = Field(default_factory=dict)
    build_status: Literal["success", "failed", "warning"] = "success"


class ParsedBuildLog(BaseModel):
    errors: List[BuildError] = Field(default_factory=list)
    warnings: List[BuildError] = Field(default_factory=list)
    summary: BuildSummary = Field(default_factory=BuildSummary)


class BuildContext(BaseModel):
    """What the external runner knows about the failed build."""

    command: Optional[str] = None
    exit_code: Optional[int] = None
    last_operation: str = "build"
    files: Dict[str, str] = Field(default_factory=dict)
