"""Catalogue of common tool failures and how to recover from them.

The runtime owns one FailureCatalogue instance and consults it when a tool
fails, appending a short corrective hint to the error the model sees.
Occurrence counts live on the instance, so two runtimes never share them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace

logger = logging.getLogger(__name__)


@dataclass
class FailurePattern:
    tool_name: str
    error_type: str  # lowercase substring matched against the error text
    correction: str
    example: str = ""
    occurrences: int = 0


@dataclass(frozen=True)
class CorrectiveAction:
    description: str
    example: str
    reasoning: str

    def as_hint(self) -> str:
        if self.example:
            return f"Hint: {self.description} (e.g. `{self.example}`)"
        return f"Hint: {self.description}"


DEFAULT_PATTERNS: tuple[FailurePattern, ...] = (
    FailurePattern("bash", "command not found", "Install the missing command first", "apt-get install <command>"),
    FailurePattern("bash", "permission denied", "Check file permissions or use sudo", "sudo <command>"),
    FailurePattern("bash", "no such file or directory", "Create the directory or check the path", "mkdir -p <directory>"),
    FailurePattern("bash", "connection refused", "Start the service first", "systemctl start <service>"),
    FailurePattern(
        "bash",
        "address already in use",
        "Stop the process using the port or use a different port",
        "lsof -ti:<port> | xargs kill",
    ),
    FailurePattern("file_read", "no such file", "Check if the file exists and the path is correct", "ls -la <path>"),
    FailurePattern("file_write", "permission denied", "Check write permissions on the directory", "chmod +w <file>"),
    FailurePattern("web_search", "network error", "Check the internet connection", ""),
)


class FailureCatalogue:
    """Known (tool, error) patterns with per-instance occurrence counts."""

    def __init__(self, patterns: tuple[FailurePattern, ...] | list[FailurePattern] = DEFAULT_PATTERNS) -> None:
        self._patterns = [replace(p) for p in patterns]
        self._lock = threading.Lock()

    def analyze(self, tool_name: str, error: str, previous_attempts: int = 0) -> CorrectiveAction | None:
        """Match an error against the catalogue; None when nothing is known."""
        lowered = error.lower()
        with self._lock:
            for pattern in self._patterns:
                if pattern.tool_name != tool_name or pattern.error_type not in lowered:
                    continue
                pattern.occurrences += 1
                if previous_attempts > 0:
                    return CorrectiveAction(
                        description=f"{pattern.correction} (attempt {previous_attempts + 1})",
                        example=pattern.example,
                        reasoning=f"Previous attempt failed with '{pattern.error_type}'. Try an alternative approach.",
                    )
                return CorrectiveAction(
                    description=pattern.correction,
                    example=pattern.example,
                    reasoning=f"Common pattern detected: {pattern.error_type}",
                )
        return None

    def learn(self, tool_name: str, error_type: str, correction: str, example: str = "") -> None:
        """Add a pattern, or bump the count of an existing one."""
        error_type = error_type.lower()
        with self._lock:
            for pattern in self._patterns:
                if pattern.tool_name == tool_name and pattern.error_type == error_type:
                    pattern.occurrences += 1
                    return
            self._patterns.append(FailurePattern(tool_name, error_type, correction, example, occurrences=1))
        logger.debug("Learned failure pattern %s/%s", tool_name, error_type)

    def most_common(self, n: int) -> list[FailurePattern]:
        with self._lock:
            ranked = sorted(self._patterns, key=lambda p: p.occurrences, reverse=True)
            return [replace(p) for p in ranked[:n]]
