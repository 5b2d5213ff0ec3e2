"""
Error Classifier
================
Turns raw build-log lines into ParsedBuildLog (errors, warnings, summary).

Pipeline per line:
    1. Skip blank / informational lines.
    2. classify_line → first matching category; "unknown" is dropped.
    3. Severity, locator, stack, confidence, suggested fix.
    4. Warnings go to ``warnings``; everything else to ``errors``.

Repairability:
    permission and network errors are never repairable, nor is anything
    below MIN_REPAIR_CONFIDENCE; among the rest only critical and error
    severities qualify.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from selfheal.core.constants import MIN_REPAIR_CONFIDENCE, SEVERITY_RANK, UNREPAIRABLE_TYPES
from selfheal.models.build_error import BuildContext, BuildError, BuildSummary, ErrorContext, ParsedBuildLog
from selfheal.parser.classification import (
    CONTEXT_RADIUS,
    calculate_confidence,
    classify_line,
    clean_message,
    determine_severity,
    extract_locator,
    extract_stack,
    is_corroborated,
    is_info_line,
    suggest_fix,
)

logger = logging.getLogger(__name__)


class ErrorClassifier:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def classify(self, log_lines: Sequence[str], context: Optional[BuildContext] = None) -> ParsedBuildLog:
        """
        Classify every line of a build log.

        Parameters
        ----------
        log_lines : sequence of str
            Raw log output, one entry per line.
        context : BuildContext, optional
            Command / exit code / last operation of the failed build.

        Returns
        -------
        ParsedBuildLog
            Never raises; unparseable lines are simply dropped.
        """
        context = context or BuildContext()
        errors: List[BuildError] = []
        warnings: List[BuildError] = []
        error_types: Dict[str, int] = {}

        for index, line in enumerate(log_lines):
            if not line.strip() or is_info_line(line):
                continue
            error_type = classify_line(line)
            if error_type == "unknown":
                continue

            error = self._build_error(line, error_type, index, log_lines, context)
            if error.severity == "warning":
                warnings.append(error)
            else:
                errors.append(error)
                error_types[error.type] = error_types.get(error.type, 0) + 1

        status = "failed" if errors else ("warning" if warnings else "success")
        logger.info("Classified %d log lines: %d errors, %d warnings", len(log_lines), len(errors), len(warnings))
        return ParsedBuildLog(
            errors=errors,
            warnings=warnings,
            summary=BuildSummary(
                total_errors=len(errors),
                total_warnings=len(warnings),
                error_types=error_types,
                build_status=status,
            ),
        )

    def _build_error(
        self,
        line: str,
        error_type: str,
        index: int,
        log_lines: Sequence[str],
        context: BuildContext,
    ) -> BuildError:
        now = self._clock()
        message = clean_message(line)
        locator = extract_locator(message)
        surrounding = list(log_lines[max(0, index - CONTEXT_RADIUS):index + CONTEXT_RADIUS + 1])

        return BuildError(
            id=f"error_{int(now * 1000)}_{index}",
            type=error_type,
            severity=determine_severity(line, error_type),
            message=message,
            file=locator.file if locator else None,
            line=locator.line if locator else None,
            column=locator.column if locator else None,
            stack=extract_stack(log_lines, index),
            timestamp=datetime.fromtimestamp(now, tz=timezone.utc),
            confidence=calculate_confidence(
                message,
                error_type,
                has_locator=locator is not None,
                corroborated=is_corroborated(log_lines, index, error_type),
            ),
            suggested_fix=suggest_fix(message, error_type),
            context=ErrorContext(
                command=context.command,
                exit_code=context.exit_code,
                logs=surrounding,
                last_operation=context.last_operation,
            ),
        )

    @staticmethod
    def is_repairable(error: BuildError) -> bool:
        if error.type in UNREPAIRABLE_TYPES:
            return False
        if error.confidence < MIN_REPAIR_CONFIDENCE:
            return False
        return error.severity in ("critical", "error")

    @staticmethod
    def most_critical(errors: Sequence[BuildError]) -> Optional[BuildError]:
        """Highest severity, then highest confidence; first wins on ties."""
        if not errors:
            return None
        return sorted(
            errors,
            key=lambda e: (SEVERITY_RANK.get(e.severity, 0), e.confidence),
            reverse=True,
        )[0]
