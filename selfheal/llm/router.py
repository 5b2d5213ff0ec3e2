"""
LLM Router
==========
Orders the streaming providers for one repair prompt.

Priority:
    gemini → groq → openrouter. A provider without an API key is never
    offered.

Cooldown:
    PROVIDER_COOLDOWN_THRESHOLD consecutive failures park a provider for the
    next PROVIDER_COOLDOWN_SKIP_COUNT calls to ``candidates()``. It comes
    back one failure short of the threshold, so a single further failure
    parks it again.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from selfheal.core.config import (
    GEMINI_API_KEY,
    GROQ_API_KEY,
    OPENROUTER_API_KEY,
    PROVIDER_COOLDOWN_SKIP_COUNT,
    PROVIDER_COOLDOWN_THRESHOLD,
)

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    """Endpoint, model and sampling settings of one streaming provider."""
    name: str
    api_key: str
    base_url: str
    model: str
    api_style: str = "openai"  # "gemini" | "openai"
    timeout_seconds: float = 60.0
    temperature: float = 0.1
    max_output_tokens: int = 8192


def default_providers() -> List[ProviderConfig]:
    """Providers in priority order, keyed from the environment."""
    return [
        ProviderConfig(
            "gemini", GEMINI_API_KEY or "",
            "https://generativelanguage.googleapis.com/v1beta", "gemini-2.0-flash",
            api_style="gemini",
        ),
        ProviderConfig(
            "groq", GROQ_API_KEY or "",
            "https://api.groq.com/openai/v1", "llama-3.3-70b-versatile",
        ),
        ProviderConfig(
            "openrouter", OPENROUTER_API_KEY or "",
            "https://openrouter.ai/api/v1", "stepfun/step-3.5-flash:free",
            timeout_seconds=30.0,
        ),
    ]


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
@dataclass
class ProviderHealth:
    name: str
    threshold: int = PROVIDER_COOLDOWN_THRESHOLD
    skip_count: int = PROVIDER_COOLDOWN_SKIP_COUNT
    consecutive_failures: int = 0
    cooldown_remaining: int = 0

    @property
    def is_healthy(self) -> bool:
        return self.cooldown_remaining == 0

    def observe(self, ok: bool) -> None:
        if ok:
            self.consecutive_failures = 0
            return
        self.consecutive_failures += 1
        if self.is_healthy and self.consecutive_failures >= self.threshold:
            self.cooldown_remaining = self.skip_count
            logger.warning(
                "%s parked for %d selections after %d failures in a row",
                self.name, self.skip_count, self.consecutive_failures,
            )

    def tick(self) -> None:
        if self.cooldown_remaining == 0:
            return
        self.cooldown_remaining -= 1
        if self.cooldown_remaining == 0:
            self.consecutive_failures = max(1, self.threshold - 1)
            logger.info("%s back in rotation, one failure from cooldown", self.name)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------
class LLMRouter:
    """
    Usage:
        router = LLMRouter()
        for provider in router.candidates():
            ...  # stream, then report_success / report_failure
    """

    def __init__(self, providers: Optional[List[ProviderConfig]] = None) -> None:
        self._providers = list(providers if providers is not None else default_providers())
        self._health = {p.name: ProviderHealth(p.name) for p in self._providers}

    def candidates(self) -> List[ProviderConfig]:
        """
        Keyed providers that are not cooling down, in priority order.

        Every call ticks the cooldowns. If all keyed providers are parked,
        the highest-priority one is offered anyway.
        """
        for health in self._health.values():
            health.tick()

        keyed = [p for p in self._providers if p.api_key]
        ready = [p for p in keyed if self._health[p.name].is_healthy]
        if ready or not keyed:
            return ready
        logger.warning("Every provider is cooling down; trying %s anyway", keyed[0].name)
        return keyed[:1]

    def report_success(self, provider_name: str) -> None:
        if provider_name in self._health:
            self._health[provider_name].observe(True)

    def report_failure(self, provider_name: str) -> None:
        if provider_name in self._health:
            self._health[provider_name].observe(False)

    def reset(self) -> None:
        self._health = {p.name: ProviderHealth(p.name) for p in self._providers}

    def get_health(self, provider_name: str) -> Optional[ProviderHealth]:
        return self._health.get(provider_name)

    @property
    def provider_health_state(self) -> Dict[str, Any]:
        return {
            h.name: {
                "is_healthy": h.is_healthy,
                "consecutive_failures": h.consecutive_failures,
                "cooldown_remaining": h.cooldown_remaining,
            }
            for h in self._health.values()
        }
