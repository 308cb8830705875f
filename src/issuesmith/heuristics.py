"""String-pattern predicates that steer the workflow.

Each predicate is case-insensitive substring matching over a fixed phrase table.
Misclassifications are corrected later by the scheduler (reconciliation, stuck recovery).
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class PhraseSet:
    """Case-insensitive "contains any of" matcher, optionally also matching a trailing '?'."""

    phrases: tuple[str, ...]
    trailing_question: bool = False

    def matches(self, text: str) -> bool:
        lowered = text.lower()
        if any(phrase in lowered for phrase in self.phrases):
            return True
        return self.trailing_question and lowered.rstrip().endswith("?")

    def with_phrases(self, phrases: Iterable[str] | None) -> PhraseSet:
        if not phrases:
            return self
        return PhraseSet(tuple(p.lower() for p in phrases), self.trailing_question)


# Assistant reply is asking the humans something.
QUESTION = PhraseSet(
    phrases=(
        "question?",
        "questions:",
        "could you clarify",
        "can you clarify",
        "please clarify",
        "need clarification",
    ),
    trailing_question=True,
)

# Assistant's own comment announces it is going ahead with the work.
READY_TO_PROCEED = PhraseSet(
    phrases=(
        "i'll create a pr",
        "i will create a pr",
        "i'll create a pull request",
        "i will create a pull request",
        "proceeding with",
        "i'll proceed",
        "i will proceed",
        "i'll start working",
        "i will start working",
        "ready to create a pr",
        "ready to implement",
    ),
)


def is_asking_question(text: str, phrases: PhraseSet = QUESTION) -> bool:
    return phrases.matches(text)


def signals_ready_to_proceed(text: str, phrases: PhraseSet = READY_TO_PROCEED) -> bool:
    return phrases.matches(text)


# -- Error classification --

_RATE_LIMIT_MARKERS = ("429", "rate limit", "rate-limit")
_SERVER_ERROR_MARKERS = (
    "500",
    "502",
    "503",
    "504",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)
_EMPTY_REPO_MARKERS = ("409", "empty")


def is_rate_limit_error(error: BaseException | str) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


def is_server_error(error: BaseException | str) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in _SERVER_ERROR_MARKERS)


def is_retryable_error(error: BaseException | str) -> bool:
    return is_rate_limit_error(error) or is_server_error(error)


def is_empty_repository_error(error: BaseException | str) -> bool:
    """Branch creation against a repository with no commits fails with 409 / "empty"."""
    text = str(error).lower()
    return any(marker in text for marker in _EMPTY_REPO_MARKERS)


# -- PR <-> issue linkage --

ISSUE_MARKER = "Fixes #{issue_number}"
_ISSUE_MARKER_RE = re.compile(r"Fixes #(\d+)")


def issue_marker(issue_number: int) -> str:
    return ISSUE_MARKER.format(issue_number=issue_number)


def extract_issue_number(pr_body: str) -> int:
    """Return the issue number from a PR body's "Fixes #N" marker, or 0 when absent."""
    match = _ISSUE_MARKER_RE.search(pr_body or "")
    if match:
        return int(match.group(1))
    return 0


def backoff_delay(attempt: int, schedule: list[int] | tuple[int, ...]) -> int:
    """Delay before retry number ``attempt`` (0-based); the last step repeats forever."""
    if not schedule:
        return 0
    if attempt < len(schedule):
        return schedule[attempt]
    return schedule[-1]
