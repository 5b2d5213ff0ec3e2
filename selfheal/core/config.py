"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    PHOENIX_ENABLED            — Master switch for the self-healing loop (default: true)
    PHOENIX_MAX_RETRIES        — Repair → commit → rebuild retries per session (default: 3)
    PHOENIX_RETRY_DELAY        — Seconds to wait between retries (default: 5)
    PHOENIX_BRANCH_PREFIX      — Fix branch prefix (default: phoenix/fix)
    PHOENIX_BASE_BRANCH        — Branch fix branches are cut from (default: main)
    PHOENIX_OPEN_PULL_REQUESTS — Open a PR after the rebuild trigger (default: false)
    MAX_COMMITS_PER_HOUR       — Auto-commit rate limit (default: 10)
    CB_MAX_CRASHES_PER_MINUTE  — Crash-loop threshold (default: 3)
    CB_MAX_DUPLICATE_ATTEMPTS  — Same-fingerprint threshold (default: 2)
    CB_COOLDOWN_MS             — Breaker window and cooldown (default: 60000)
    AI_TIMEOUT_SECONDS         — Ceiling for one streamed AI call (default: 120)
    VCS_TIMEOUT_SECONDS        — Ceiling for one VCS call (default: 30)
    CI_TIMEOUT_SECONDS         — Ceiling for one CI trigger (default: 60)
    REPAIR_OVERFLOW_POLICY     — "drop" or "queue" for concurrent repair triggers
    GITHUB_TOKEN / GITHUB_REPO — VCS + CI adapter credentials ("owner/repo")
    CI_WORKFLOW_FILE           — Workflow dispatched on rebuild (default: ci.yml)
    GEMINI_API_KEY / GROQ_API_KEY / OPENROUTER_API_KEY — AI providers
    TELEMETRY_URL              — Optional HTTP telemetry endpoint
    LOG_DIR                    — Daily log file directory; empty disables it (default: logs)

Timeout Philosophy:
    Every collaborator call (AI stream, VCS read/write, CI trigger) gets its
    own ceiling. A stalled network peer fails the current step, which then
    goes through the normal retry budget instead of wedging the session.

Config Structs:
    The module-level values are defaults only. The entry point builds the
    pydantic config objects below once and passes them to each component.
"""
import os
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


PHOENIX_ENABLED = _env_bool("PHOENIX_ENABLED", "true")
PHOENIX_MAX_RETRIES = int(os.getenv("PHOENIX_MAX_RETRIES", 3))
PHOENIX_RETRY_DELAY = float(os.getenv("PHOENIX_RETRY_DELAY", 5))
PHOENIX_BRANCH_PREFIX = os.getenv("PHOENIX_BRANCH_PREFIX", "phoenix/fix")
PHOENIX_BASE_BRANCH = os.getenv("PHOENIX_BASE_BRANCH", "main")
PHOENIX_OPEN_PULL_REQUESTS = _env_bool("PHOENIX_OPEN_PULL_REQUESTS", "false")
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", 24 * 60 * 60))

# Commit safety
MAX_COMMITS_PER_HOUR = int(os.getenv("MAX_COMMITS_PER_HOUR", 10))

# Circuit breaker
CB_MAX_CRASHES_PER_MINUTE = int(os.getenv("CB_MAX_CRASHES_PER_MINUTE", 3))
CB_MAX_DUPLICATE_ATTEMPTS = int(os.getenv("CB_MAX_DUPLICATE_ATTEMPTS", 2))
CB_COOLDOWN_MS = int(os.getenv("CB_COOLDOWN_MS", 60000))

# Per-step timeouts in seconds
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", 120))
VCS_TIMEOUT_SECONDS = float(os.getenv("VCS_TIMEOUT_SECONDS", 30))
CI_TIMEOUT_SECONDS = float(os.getenv("CI_TIMEOUT_SECONDS", 60))

REPAIR_OVERFLOW_POLICY = os.getenv("REPAIR_OVERFLOW_POLICY", "drop")
MAX_PATCH_REPROMPTS = int(os.getenv("MAX_PATCH_REPROMPTS", 1))

# Collaborators
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN")
GITHUB_REPO = os.getenv("GITHUB_REPO", "")
CI_WORKFLOW_FILE = os.getenv("CI_WORKFLOW_FILE", "ci.yml")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
TELEMETRY_URL = os.getenv("TELEMETRY_URL", "")
LOG_DIR = os.getenv("LOG_DIR", "logs")

# Provider health cooldown
PROVIDER_COOLDOWN_THRESHOLD = int(os.getenv("PROVIDER_COOLDOWN_THRESHOLD", 3))
PROVIDER_COOLDOWN_SKIP_COUNT = int(os.getenv("PROVIDER_COOLDOWN_SKIP_COUNT", 5))


# ---------------------------------------------------------------------------
# Config structs
# ---------------------------------------------------------------------------
class CircuitBreakerConfig(BaseModel):
    max_crashes_per_minute: int = Field(default=CB_MAX_CRASHES_PER_MINUTE, ge=1)
    max_duplicate_attempts: int = Field(default=CB_MAX_DUPLICATE_ATTEMPTS, ge=1)
    cooldown_ms: int = Field(default=CB_COOLDOWN_MS, ge=0)
    # Emergency brake: when False, trips are logged but never block
    enabled: bool = True


class RepairConfig(BaseModel):
    overflow_policy: Literal["drop", "queue"] = REPAIR_OVERFLOW_POLICY  # type: ignore[assignment]
    ai_timeout_seconds: float = AI_TIMEOUT_SECONDS
    max_patch_reprompts: int = Field(default=MAX_PATCH_REPROMPTS, ge=0)


class AutoCommitConfig(BaseModel):
    max_commits_per_hour: int = Field(default=MAX_COMMITS_PER_HOUR, ge=0)
    branch_prefix: str = PHOENIX_BRANCH_PREFIX
    base_branch: str = PHOENIX_BASE_BRANCH
    author_name: str = "Project Phoenix"
    author_email: str = "phoenix@selfheal.local"
    vcs_timeout_seconds: float = VCS_TIMEOUT_SECONDS
    ci_timeout_seconds: float = CI_TIMEOUT_SECONDS


class PhoenixConfig(BaseModel):
    enabled: bool = PHOENIX_ENABLED
    auto_retry: bool = True
    max_retries: int = Field(default=PHOENIX_MAX_RETRIES, ge=0)
    retry_delay_seconds: float = Field(default=PHOENIX_RETRY_DELAY, ge=0)
    open_pull_requests: bool = PHOENIX_OPEN_PULL_REQUESTS
    session_ttl_seconds: int = SESSION_TTL_SECONDS
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    repair: RepairConfig = Field(default_factory=RepairConfig)
    commit: AutoCommitConfig = Field(default_factory=AutoCommitConfig)
