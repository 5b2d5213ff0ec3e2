"""
Constants
Centralised storage for error categories, severities, stream tags and Git rules.
"""
SEVERITY_RANK = {"critical": 4, "error": 3, "warning": 2, "info": 1}

# Error types the pipeline never tries to repair on its own
UNREPAIRABLE_TYPES = frozenset({"permission", "network"})
MIN_REPAIR_CONFIDENCE = 60

# Stream block tags emitted by the AI
THINKING_TAG = "thinking"
SHELL_TAG = "shell"
FILE_TAG = "file"
SEARCH_TAG = "search"
REPLACE_TAG = "replace"

COMMIT_PREFIX = "[PHOENIX] Auto-fix:"
PR_TITLE_PREFIX = "Phoenix Auto-Fix:"
SHORT_ID_LENGTH = 8
