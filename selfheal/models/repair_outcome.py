"""
Repair Outcome Model
====================
Result of one RepairOrchestrator.trigger_repair call.

Fields:
    status          — succeeded | failed | blocked | busy | queued
    patches         — FilePatch list ready for commit (succeeded only)
    files           — post-image of every touched file
    reason          — human-readable reason for anything but succeeded
    repair_needed   — search blocks that matched no PatchEngine tier
    thinking        — last thinking block, for the session log
"""
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .patch import FilePatch, PatchFailure

OutcomeStatus = Literal["succeeded", "failed", "blocked", "busy", "queued"]


class RepairOutcome(BaseModel):
    status: OutcomeStatus
    patches: List[FilePatch] = Field(default_factory=list)
    files: Dict[str, str] = Field(default_factory=dict)
    reason: Optional[str] = None
    repair_needed: List[PatchFailure] = Field(default_factory=list)
    thinking: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"
