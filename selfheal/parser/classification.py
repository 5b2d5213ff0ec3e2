"""
Classification
==============
Pattern tables and scoring rules that turn one build-log line into a typed,
confidence-scored error.

Error Types (priority order, first match wins):
    dependency, syntax, config, runtime, network, permission
    Lines matching nothing are "unknown" and dropped by the classifier.

Scoring:
    Confidence starts at CONF_BASE. Boosts come from _CONFIDENCE_BOOSTS
    (category keyword), a file:line locator, and corroboration between a
    dependency line and a nearby "Cannot find module" line. Capped at 100.

Rules are data: tests exercise the tables directly, and nothing here
consults an LLM.
"""
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

# ---------------------------------------------------------------------------
# Confidence Constants
# ---------------------------------------------------------------------------
CONF_BASE = 50
CONF_LOCATOR_BOOST = 15
CONF_CORROBORATION_BOOST = 20
CONF_MAX = 100

CONTEXT_RADIUS = 3
STACK_LOOKAHEAD = 9


# ---------------------------------------------------------------------------
# 1. Category Pattern Tables (priority order)
# ---------------------------------------------------------------------------
_CATEGORY_PATTERNS: List[Tuple[str, List[re.Pattern]]] = [
    ("dependency", [
        re.compile(r"npm ERR!\s+code\s+ERESOLVE", re.I),
        re.compile(r"npm ERR!\s+peer dep missing", re.I),
        re.compile(r"Could not resolve dependency", re.I),
        re.compile(r"UNMET PEER DEPENDENCY", re.I),
        re.compile(r"Module not found", re.I),
        re.compile(r"Cannot find module", re.I),
        re.compile(r"Error: Cannot find package", re.I),
        re.compile(r"Failed to resolve loader", re.I),
        re.compile(r"No module named", re.I),
    ]),
    ("syntax", [
        re.compile(r"SyntaxError:", re.I),
        re.compile(r"Unexpected token", re.I),
        re.compile(r"Unexpected identifier", re.I),
        re.compile(r"Missing semicolon", re.I),
        re.compile(r"Invalid regular expression", re.I),
        re.compile(r"Unterminated string literal", re.I),
        re.compile(r"Unexpected end of input", re.I),
        re.compile(r"Parsing error", re.I),
        re.compile(r"TypeScript error", re.I),
        re.compile(r"TS\d+:", re.I),
    ]),
    ("config", [
        re.compile(r"Configuration file not found", re.I),
        re.compile(r"Invalid configuration", re.I),
        re.compile(r"Missing required configuration", re.I),
        re.compile(r"config file is missing", re.I),
        re.compile(r"No configuration file found", re.I),
        re.compile(r"Invalid option", re.I),
        re.compile(r"Unknown option", re.I),
        re.compile(r"CLI error", re.I),
    ]),
    ("runtime", [
        re.compile(r"ReferenceError:", re.I),
        re.compile(r"TypeError:", re.I),
        re.compile(r"Cannot read propert(y|ies)", re.I),
        re.compile(r"is not a function", re.I),
        re.compile(r"is not defined", re.I),
        re.compile(r"null.*undefined", re.I),
        re.compile(r"Cannot access.*before initialization", re.I),
    ]),
    ("network", [
        re.compile(r"ECONNREFUSED", re.I),
        re.compile(r"ETIMEDOUT", re.I),
        re.compile(r"Network error", re.I),
        re.compile(r"fetch failed", re.I),
        re.compile(r"Failed to load resource", re.I),
        re.compile(r"CORS policy", re.I),
        re.compile(r"404 Not Found", re.I),
        re.compile(r"500 Internal Server Error", re.I),
    ]),
    ("permission", [
        re.compile(r"EACCES", re.I),
        re.compile(r"EPERM", re.I),
        re.compile(r"Permission denied", re.I),
        re.compile(r"Access denied", re.I),
        re.compile(r"Unauthorized", re.I),
        re.compile(r"Forbidden", re.I),
    ]),
]


# ---------------------------------------------------------------------------
# 2. Confidence boosts: (error_type, literal token, boost)
# ---------------------------------------------------------------------------
_CONFIDENCE_BOOSTS: List[Tuple[str, str, int]] = [
    ("dependency", "npm ERR!", 30),
    ("syntax", "SyntaxError", 30),
    ("config", "Configuration", 25),
    ("runtime", "Error:", 20),
]

_MISSING_MODULE_RE = re.compile(r"Cannot find module|Module not found", re.I)
_NPM_ERR_RE = re.compile(r"npm ERR!")
_FILE_LINE_RE = re.compile(r"[\w./\\-]+\.\w+:\d+")


# ---------------------------------------------------------------------------
# 3. Locators: each yields (file, line, column?)
# ---------------------------------------------------------------------------
_LOCATOR_PATTERNS: List[re.Pattern] = [
    re.compile(r"at\s+.*\(([^:()]+):(\d+):(\d+)\)"),
    re.compile(r"Error:\s+([^:\s]+):(\d+):(\d+)"),
    re.compile(r"TS\d+:\s+([^:\s]+):(\d+):(\d+)"),
    re.compile(r"([^\s:]+):(\d+):(\d+)\s+-\s+error"),
    re.compile(r"File \"([^\"]+)\", line (\d+)()"),
]


# ---------------------------------------------------------------------------
# 4. Suggested fixes: (error_type, predicate regex or None, advice)
# ---------------------------------------------------------------------------
_SUGGESTED_FIXES: List[Tuple[str, Optional[re.Pattern], str]] = [
    ("dependency", re.compile(r"ERESOLVE"),
     "Try adding --legacy-peer-deps to npm install or update package.json dependencies"),
    ("dependency", _MISSING_MODULE_RE, "Install missing dependency: npm install {module}"),
    ("dependency", None, "Check package.json dependencies and run npm install"),
    ("syntax", re.compile(r"Unexpected token"), "Check syntax around the reported line and column"),
    ("syntax", None, "Fix syntax error in the reported file"),
    ("config", None, "Check configuration files (package.json, tsconfig.json, etc.)"),
    ("runtime", re.compile(r"cannot read propert", re.I), "Add null check or optional chaining"),
    ("runtime", None, "Check variable initialization and data types"),
    ("network", None, "Check network connection and API endpoints"),
    ("permission", None, "Check file permissions and run with appropriate access rights"),
]
_DEFAULT_FIX = "Review error details and check documentation"

_MODULE_NAME_RE = re.compile(r"(?:Cannot find module|Module not found)[^'\"]*['\"]([^'\"]+)['\"]", re.I)

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")
_ISO_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z?\s*")
_INFO_PREFIX_RE = re.compile(
    r"^\s*(?:\d{4}-\d{2}-\d{2}T\S+\s+)?"
    r"(?:npm\s+(?:info|verb|verbose|debug|timing|http)\b"
    r"|\[(?:info|debug|verbose)\]"
    r"|(?:info|debug|verbose)\b\s*:?\s)",
    re.I,
)
_COMMAND_ECHO_RE = re.compile(r"^\s*[>$]\s+")


@dataclass(frozen=True)
class Locator:
    file: str
    line: int
    column: Optional[int] = None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def is_info_line(line: str) -> bool:
    """
    Log-level prefixed lines (``npm info``, ``[debug]``, ``verbose: ``) and
    command echoes are never errors. The words alone elsewhere in a line do
    not count: ``src/debug.ts:3:1 - error`` is still an error.
    """
    return bool(_INFO_PREFIX_RE.match(line) or _COMMAND_ECHO_RE.match(line))


def classify_line(line: str) -> str:
    """Return the first matching error type, or "unknown"."""
    for error_type, patterns in _CATEGORY_PATTERNS:
        if any(p.search(line) for p in patterns):
            return error_type
    return "unknown"


def determine_severity(line: str, error_type: str) -> str:
    if "FATAL" in line or "CRITICAL" in line or error_type == "permission":
        return "critical"
    if "ERROR" in line or error_type in ("dependency", "syntax"):
        return "error"
    if "WARN" in line:
        return "warning"
    return "error"


def extract_locator(line: str) -> Optional[Locator]:
    for pattern in _LOCATOR_PATTERNS:
        match = pattern.search(line)
        if match:
            column = int(match.group(3)) if match.group(3) else None
            return Locator(file=match.group(1), line=int(match.group(2)), column=column)
    return None


def is_corroborated(lines: Sequence[str], index: int, error_type: str) -> bool:
    """
    A dependency line followed by a missing-module line (or a missing-module
    line preceded by ``npm ERR!``) within CONTEXT_RADIUS lines.
    """
    if error_type != "dependency":
        return False
    line = lines[index]
    after = lines[index + 1:index + 1 + CONTEXT_RADIUS]
    before = lines[max(0, index - CONTEXT_RADIUS):index]
    if _NPM_ERR_RE.search(line) and any(_MISSING_MODULE_RE.search(n) for n in after):
        return True
    if _MISSING_MODULE_RE.search(line) and any(_NPM_ERR_RE.search(p) for p in before):
        return True
    return False


def calculate_confidence(
    line: str,
    error_type: str,
    has_locator: bool = False,
    corroborated: bool = False,
) -> int:
    confidence = CONF_BASE
    for boost_type, token, boost in _CONFIDENCE_BOOSTS:
        if boost_type == error_type and token in line:
            confidence += boost
    if has_locator or _FILE_LINE_RE.search(line):
        confidence += CONF_LOCATOR_BOOST
    if corroborated:
        confidence += CONF_CORROBORATION_BOOST
    return min(CONF_MAX, confidence)


def suggest_fix(line: str, error_type: str) -> str:
    for fix_type, predicate, advice in _SUGGESTED_FIXES:
        if fix_type != error_type:
            continue
        if predicate is None or predicate.search(line):
            if "{module}" in advice:
                name = _MODULE_NAME_RE.search(line)
                return advice.format(module=name.group(1) if name else "[module-name]")
            return advice
    return _DEFAULT_FIX


def extract_stack(lines: Sequence[str], index: int) -> Optional[str]:
    """Up to STACK_LOOKAHEAD following lines that look like stack frames."""
    stack: List[str] = []
    for candidate in lines[index + 1:index + 1 + STACK_LOOKAHEAD]:
        stripped = candidate.strip()
        if stripped.startswith("at ") or "node_modules" in candidate:
            stack.append(candidate)
        elif stack and not stripped:
            break
    return "\n".join(stack) if stack else None


def clean_message(line: str) -> str:
    """Drop ANSI colour codes and a leading ISO timestamp."""
    return _ISO_TIMESTAMP_RE.sub("", _ANSI_RE.sub("", line)).strip()
