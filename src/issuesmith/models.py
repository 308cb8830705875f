"""Data models and enums for issuesmith."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum


class Status(StrEnum):
    """Workflow stages of an issue record. The persisted status IS the state machine."""

    ANALYZING = "analyzing"
    WAITING_FOR_CLARIFICATION = "waiting_for_clarification"
    READY_TO_IMPLEMENT = "ready_to_implement"
    IMPLEMENTING = "implementing"
    PR_CREATED = "pr_created"
    REVIEWING = "reviewing"
    COMPLETED = "completed"


REVIEW_STATUSES = {Status.PR_CREATED, Status.REVIEWING}


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        return cls(role=Role(data["role"]), content=data.get("content", ""))


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class IssueRecord:
    """Persisted conversation and workflow state for one tracker issue."""

    owner: str
    repo: str
    issue_number: int
    status: Status = Status.ANALYZING
    branch_name: str = ""
    pr_number: int | None = None
    conversation: list[Message] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    # Comments created at or before this instant have been fed to the assistant
    comments_seen_at: datetime | None = None

    @property
    def full_repo(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def issue_ref(self) -> str:
        return f"{self.full_repo}#{self.issue_number}"

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def append(self, role: Role, content: str) -> None:
        self.conversation.append(Message(role=role, content=content))

    def add_usage(self, usage: Usage) -> None:
        self.input_tokens += max(usage.input_tokens, 0)
        self.output_tokens += max(usage.output_tokens, 0)
        self.cost_usd += max(usage.cost_usd, 0.0)


@dataclass
class ChangeSet:
    """File path -> full intended content, plus a human summary. Never persisted."""

    files: dict[str, str] = field(default_factory=dict)
    summary: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.files


# -- Tracker DTOs --


@dataclass
class Issue:
    number: int
    title: str = ""
    body: str = ""
    author: str = ""
    is_pull_request: bool = False

    @classmethod
    def from_api(cls, data: dict) -> Issue:
        return cls(
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body") or "",
            author=(data.get("user") or {}).get("login", ""),
            is_pull_request="pull_request" in data,
        )


@dataclass
class Comment:
    id: int
    author: str
    body: str
    created_at: datetime
    path: str | None = None
    line: int | None = None

    @classmethod
    def from_api(cls, data: dict) -> Comment:
        return cls(
            id=data["id"],
            author=(data.get("user") or {}).get("login", ""),
            body=data.get("body") or "",
            created_at=parse_timestamp(data["created_at"]),
            path=data.get("path"),
            line=data.get("line") or data.get("original_line"),
        )


@dataclass
class PullRequest:
    number: int
    body: str = ""
    head_ref: str = ""

    @classmethod
    def from_api(cls, data: dict) -> PullRequest:
        return cls(
            number=data["number"],
            body=data.get("body") or "",
            head_ref=(data.get("head") or {}).get("ref", ""),
        )


@dataclass
class RepositoryInfo:
    default_branch: str = "main"
    language: str = ""


def parse_timestamp(value: str) -> datetime:
    """Parse a GitHub/ISO-8601 timestamp. Naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
