"""Turn raw agent output plus task-list state into one loop verdict."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from turnkeeper.config import CompletionSettings
from turnkeeper.loop.tasks import TaskList, read_task_list

logger = logging.getLogger(__name__)

_API_LIMIT_PATTERNS: tuple[str, ...] = (
    r"usage limit",
    r"rate limit",
    r"too many requests",
    r"\d+-hour limit",
    r"exceeded.*limit",
)
_API_LIMIT_RES = tuple(re.compile(pattern, re.IGNORECASE) for pattern in _API_LIMIT_PATTERNS)

_ERROR_LINE_RE = re.compile(
    r"^\s*(?:Error|error):|FAILED|AssertionError:|TypeError:|SyntaxError:|Exception:",
)
_ARROW_PREFIX_RE = re.compile(r"^\s*\d+\s*(?:→|->)")
_JSON_TOOL_RESULT_RE = re.compile(r'"type"\s*:\s*"tool_result"')
_TOOL_RESULT_OPEN = "<tool_result>"
_TOOL_RESULT_CLOSE = "</tool_result>"

_ISO_TIMESTAMP_PREFIX_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?\s*",
)
_BRACKET_TIMESTAMP_PREFIX_RE = re.compile(r"^\[\d{4}-\d{2}-\d{2}\s\d{2}:\d{2}:\d{2}(?:\.\d+)?\]\s*")
_COLON_LINE_NUMBER_RE = re.compile(r":\d+:")
_WORD_LINE_NUMBER_RE = re.compile(r"line\s+\d+")
_WHITESPACE_RE = re.compile(r"\s+")


class Verdict(str, Enum):
    """What the loop does after a turn."""

    COMPLETE = "complete"
    STORY_COMPLETE = "story_complete"
    API_LIMIT = "api_limit"
    CONTINUE = "continue"


@dataclass(slots=True)
class Classification:
    """Verdict plus the rule and pattern that produced it."""

    verdict: Verdict
    matched_rule: str
    matched_pattern: str | None = None


class CompletionClassifier:
    """Priority-ordered verdicts: Complete, StoryComplete, ApiLimit, Continue.

    The done tag and any custom completion patterns are advisory only: the
    verdict is ``Complete`` exactly when every task in the task list passes.
    Custom story patterns join the story tag, and any of them yields
    ``StoryComplete``.
    """

    def __init__(self, settings: CompletionSettings | None = None) -> None:
        self.settings = settings or CompletionSettings()
        self._custom_patterns: list[str] = []
        self._story_patterns: list[str] = []
        for pattern in self.settings.custom_patterns:
            self.add_pattern(pattern)
        for pattern in self.settings.custom_story_patterns:
            self.add_story_pattern(pattern)

    def add_pattern(self, pattern: str) -> None:
        if not pattern:
            raise ValueError("Completion pattern cannot be empty")
        if pattern not in self._custom_patterns:
            self._custom_patterns.append(pattern)
            logger.debug("Added custom completion pattern: %s", pattern)

    def add_story_pattern(self, pattern: str) -> None:
        if not pattern:
            raise ValueError("Story completion pattern cannot be empty")
        if pattern not in self._story_patterns:
            self._story_patterns.append(pattern)
            logger.debug("Added custom story completion pattern: %s", pattern)

    def clear_patterns(self) -> None:
        self._custom_patterns.clear()
        self._story_patterns.clear()

    def completion_patterns(self) -> list[str]:
        """Done tag first, then custom patterns in registration order."""

        return [self.settings.completion_promise, *self._custom_patterns]

    def story_patterns(self) -> list[str]:
        return [self.settings.story_complete_signal, *self._story_patterns]

    def classify(self, output: str, task_list_path: Path | None) -> Classification:
        done_signal = _first_substring(output, self.completion_patterns())

        if _all_tasks_complete(task_list_path):
            return Classification(
                verdict=Verdict.COMPLETE,
                matched_rule="all_tasks_passed",
                matched_pattern=done_signal,
            )
        if done_signal is not None:
            logger.warning(
                "Completion signal %r found but not every task passes; continuing",
                done_signal,
            )

        story_signal = _first_substring(output, self.story_patterns())
        if story_signal is not None:
            return Classification(
                verdict=Verdict.STORY_COMPLETE,
                matched_rule="story_complete_signal",
                matched_pattern=story_signal,
            )

        api_pattern = detect_api_limit(output)
        if api_pattern is not None:
            return Classification(
                verdict=Verdict.API_LIMIT,
                matched_rule="api_limit",
                matched_pattern=api_pattern,
            )

        return Classification(verdict=Verdict.CONTINUE, matched_rule="fallback_continue")


def detect_api_limit(output: str) -> str | None:
    """Return the first API-limit pattern found in ``output``, case-insensitively."""

    if not output:
        return None
    for pattern, regex in zip(_API_LIMIT_PATTERNS, _API_LIMIT_RES, strict=True):
        if regex.search(output):
            logger.debug("API limit detected: pattern %r matched", pattern)
            return pattern
    return None


def extract_error(output: str) -> str | None:
    """First genuine error line, ignoring file content the agent quoted back."""

    for line in _unquoted_lines(output.splitlines()):
        if _ERROR_LINE_RE.search(line):
            return line
    return None


def normalize_error(line: str) -> str:
    """Make an error line stable across turns for deduplication."""

    normalized = _ISO_TIMESTAMP_PREFIX_RE.sub("", line.strip(), count=1)
    normalized = _BRACKET_TIMESTAMP_PREFIX_RE.sub("", normalized, count=1)
    normalized = _ARROW_PREFIX_RE.sub("", normalized, count=1)
    normalized = _COLON_LINE_NUMBER_RE.sub(":", normalized)
    normalized = _WORD_LINE_NUMBER_RE.sub("line ", normalized)
    normalized = _WHITESPACE_RE.sub(" ", normalized)
    return normalized.strip()


def is_quoted_line(line: str) -> bool:
    """Line-number-arrow listing or a stream-JSON tool result."""

    return bool(_ARROW_PREFIX_RE.match(line) or _JSON_TOOL_RESULT_RE.search(line))


def _unquoted_lines(lines: Iterable[str]) -> Iterator[str]:
    inside_tool_result = False
    for line in lines:
        if inside_tool_result:
            if _TOOL_RESULT_CLOSE in line:
                inside_tool_result = False
            continue
        if _TOOL_RESULT_OPEN in line:
            inside_tool_result = _TOOL_RESULT_CLOSE not in line.split(_TOOL_RESULT_OPEN, 1)[1]
            continue
        if is_quoted_line(line):
            continue
        yield line


def _all_tasks_complete(task_list_path: Path | None) -> bool:
    if task_list_path is None:
        return False
    try:
        task_list: TaskList = read_task_list(task_list_path)
    except FileNotFoundError:
        logger.debug("Task list not found: %s", task_list_path)
        return False
    except (OSError, ValueError, TypeError, KeyError) as error:
        logger.warning("Cannot read task list %s, treating as incomplete: %s", task_list_path, error)
        return False
    return task_list.all_complete()


def _first_substring(haystack: str, patterns: Iterable[str]) -> str | None:
    for pattern in patterns:
        if pattern and pattern in haystack:
            return pattern
    return None
