"""
LLM Prompts
===========
Centralised store for the repair system prompt and prompt builders.

Prompt Design Rules:
    - Fix only the reported error; smallest possible change
    - Do not rewrite whole files unless strictly necessary
    - Answer in the block format StreamBlockParser understands:
        <thinking>…</thinking>
        <file path="…" type="patch"><search>…</search><replace>…</replace></file>
        <file path="…" type="create">…full content…</file>

Error Analysis:
    ``analyze_error`` derives a likely cause and suggested fix from a
    deterministic rule table (error type + message predicate). No LLM is
    consulted to describe the error.

Relevant Files:
    At most MAX_PROMPT_FILES files, the error's own file first, then source
    extensions before everything else; each truncated to MAX_FILE_CHARS.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from selfheal.models.build_error import BuildContext, BuildError
from selfheal.models.patch import PatchFailure

logger = logging.getLogger(__name__)

MAX_PROMPT_FILES = 10
MAX_FILE_CHARS = 4000
RECENT_LOG_LINES = 5

SOURCE_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".vue", ".py", ".html", ".css", ".json")


# ---------------------------------------------------------------------------
# System Prompt
# ---------------------------------------------------------------------------
SYSTEM_PROMPT = (
    "You are Project Phoenix, an automatic build repair engineer. Your ONLY job is to make the failing build pass.\n"
    "\n"
    "HARD RULES: you MUST follow ALL of these:\n"
    "1. Fix ONLY the reported error. Nothing else.\n"
    "2. Minimum diff only: change as few lines as possible.\n"
    "3. Preserve ALL comments exactly as they are.\n"
    "4. Do NOT refactor, rename, or reorganise unrelated code.\n"
    "5. Do NOT rewrite entire files unless absolutely necessary.\n"
    "6. Do NOT insert destructive shell commands or modify CI pipeline files.\n"
    "7. Copy <search> text EXACTLY from the file, including indentation.\n"
    "\n"
    "RESPONSE FORMAT:\n"
    "<thinking>one short paragraph on the root cause</thinking>\n"
    '<file path="relative/path.ext" type="patch">\n'
    "<search>exact lines to replace</search>\n"
    "<replace>new lines</replace>\n"
    "</file>\n"
    'Use type="create" with the full file content for new files.\n'
    "No markdown code fences around the blocks."
)


# ---------------------------------------------------------------------------
# Error analysis rule table
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ErrorAnalysis:
    likely_cause: str
    suggested_fix: str
    hints: Tuple[str, ...] = field(default_factory=tuple)


_UNDEFINED_IDENT_RE = re.compile(r"(\w+)\s+is not defined|(?:undefined|not defined)\s+(?:of\s+)?(\w+)", re.I)
_MODULE_NAME_RE = re.compile(r"['\"]([^'\"]+)['\"]")

# Each entry: (error_type, predicate on lowercased message, likely cause, suggested fix)
_ANALYSIS_RULES: List[Tuple[str, Callable[[str], bool], str, str]] = [
    ("runtime", lambda m: "cannot read propert" in m,
     "Null/undefined value being accessed", "Add null check or optional chaining"),
    ("runtime", lambda m: "is not defined" in m or "undefined" in m,
     "Missing import, variable declaration, or property access", "Import or declare the missing identifier"),
    ("runtime", lambda m: "is not a function" in m,
     "Calling something that is not a function", "Check the export / import shape and the call site"),
    ("runtime", lambda m: "typeerror" in m,
     "Wrong data type or method call", "Check variable types before operations"),
    ("runtime", lambda m: True,
     "Runtime failure during the build", "Check variable initialization and data types"),
    ("dependency", lambda m: "eresolve" in m or "peer dep" in m,
     "Conflicting peer dependency versions", "Align package.json versions or install with --legacy-peer-deps"),
    ("dependency", lambda m: "cannot find module" in m or "module not found" in m or "no module named" in m,
     "A required package or local module is missing", "Install the package or fix the import path"),
    ("dependency", lambda m: True,
     "Dependency resolution failed", "Check package.json dependencies and run npm install"),
    ("syntax", lambda m: "unexpected token" in m,
     "Invalid token in source", "Check syntax at the reported location"),
    ("syntax", lambda m: True,
     "Source does not parse", "Fix the syntax error in the reported file"),
    ("config", lambda m: True,
     "Invalid or missing configuration", "Check configuration files (package.json, tsconfig.json, build config)"),
    ("network", lambda m: True,
     "API call failure or network issue", "Add error handling for network requests"),
    ("permission", lambda m: True,
     "Insufficient file or API permissions", "Check file permissions and access rights"),
]


def analyze_error(error: BuildError, files: Optional[Dict[str, str]] = None) -> ErrorAnalysis:
    """
    Derive a likely cause and suggested fix for ``error``.

    Parameters
    ----------
    error : BuildError
        The error picked for repair.
    files : dict, optional
        Project file map; used only for hints about related files.

    Returns
    -------
    ErrorAnalysis
        Deterministic for a given error.
    """
    message = error.message.lower()
    cause, fix = "Unknown error type; requires investigation", "Review error details"
    for rule_type, predicate, rule_cause, rule_fix in _ANALYSIS_RULES:
        if rule_type == error.type and predicate(message):
            cause, fix = rule_cause, rule_fix
            break

    hints: List[str] = []
    if error.type == "runtime" and "defined" in message:
        match = _UNDEFINED_IDENT_RE.search(error.message)
        if match:
            hints.append(f"Undefined identifier: {match.group(1) or match.group(2)}")
    if error.type == "dependency":
        match = _MODULE_NAME_RE.search(error.message)
        if match:
            hints.append(f"Missing module: {match.group(1)}")
    if error.stack:
        for i, line in enumerate(error.stack.split("\n")[:3], 1):
            if line.strip():
                hints.append(f"Stack {i}: {line.strip()}")
    if error.file and error.line:
        location = f"{error.file}:{error.line}"
        if error.column:
            location += f":{error.column}"
        hints.append(f"Error location: {location}")
    if files and error.file and error.file not in files:
        hints.append(f"{error.file} is not in the provided file map")

    return ErrorAnalysis(likely_cause=cause, suggested_fix=fix, hints=tuple(hints))


# ---------------------------------------------------------------------------
# Relevant files
# ---------------------------------------------------------------------------
def select_relevant_files(files: Dict[str, str], error: Optional[BuildError] = None,
                          limit: int = MAX_PROMPT_FILES) -> List[str]:
    """Error file first, then source files, then the rest; at most ``limit`` paths."""
    def rank(path: str) -> Tuple[int, int, str]:
        is_error_file = 0 if error and error.file and (path == error.file or path.endswith("/" + error.file)) else 1
        is_source = 0 if path.endswith(SOURCE_EXTENSIONS) else 1
        return (is_error_file, is_source, path)

    return sorted(files, key=rank)[:limit]


def _truncate(content: str, limit: int = MAX_FILE_CHARS) -> str:
    if len(content) <= limit:
        return content
    return content[:limit] + f"\n... [truncated {len(content) - limit} chars]"


def _format_files(files: Dict[str, str], paths: Sequence[str]) -> str:
    sections = [f'<current path="{p}">\n{_truncate(files[p])}\n</current>' for p in paths]
    return "\n\n".join(sections) if sections else "(no files provided)"


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------
def build_repair_prompt(error: BuildError, context: BuildContext) -> str:
    analysis = analyze_error(error, context.files)
    recent_logs = "\n".join(error.context.logs[-RECENT_LOG_LINES:]) or "(none)"
    paths = select_relevant_files(context.files, error)
    hints = "\n".join(f"- {h}" for h in analysis.hints) or "- none"

    return f"""PROJECT PHOENIX: Build error detected requiring automatic repair.

ERROR DETAILS:
- Type: {error.type}
- Severity: {error.severity}
- Message: {error.message}
- File: {error.file or 'Unknown'}
- Line: {error.line or 'Unknown'}
- Column: {error.column or 'Unknown'}
- Confidence: {error.confidence}%
- Stack: {error.stack or 'No stack trace'}

ERROR ANALYSIS:
- Likely cause: {analysis.likely_cause}
- Suggested fix: {analysis.suggested_fix}
- Classifier suggestion: {error.suggested_fix or 'No suggestion available'}
{hints}

RECENT LOGS:
{recent_logs}

CONTEXT:
- Command: {context.command or error.context.command or 'Unknown'}
- Exit code: {context.exit_code if context.exit_code is not None else 'Unknown'}
- Last operation: {context.last_operation}

RELEVANT FILES ({len(paths)} of {len(context.files)}):
{_format_files(context.files, paths)}

REPAIR INSTRUCTIONS:
1. Identify the root cause from the error and the files above
2. Emit one <file type="patch"> block per change, search text copied exactly
3. Focus on the specific error; do not rewrite entire files

IMPORTANT: Apply the smallest possible fix that resolves the error."""


def build_reprompt(failures: Sequence[PatchFailure], files: Dict[str, str]) -> str:
    """Ask the AI to re-issue patches whose search blocks matched nothing."""
    sections = []
    for failure in failures:
        current = files.get(failure.path, "")
        sections.append(
            f'FILE: {failure.path}\n'
            f'PROBLEM: {failure.error}\n'
            f'CURRENT CONTENT:\n{_truncate(current)}'
        )
    body = "\n\n---\n\n".join(sections)
    return f"""REPAIR NEEDED: {len(failures)} of your patches could not be applied.

The <search> text must match the current file exactly. Re-issue ONLY the
failed patches, copying the search text from the current content below.

{body}"""
