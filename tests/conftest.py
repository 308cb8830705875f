from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from issuesmith.assistant import AssistantClient, AssistantReply
from issuesmith.config import IssuesmithConfig
from issuesmith.github import GitHubClient
from issuesmith.models import (
    Issue,
    IssueRecord,
    PullRequest,
    RepositoryInfo,
    Role,
    Status,
    Usage,
)
from issuesmith.state import StateStore
from issuesmith.workflow import IssueAgent

IDENTITY = "smith-bot"
OWNER = "octo"
REPO = "widgets"
ISSUE_NUMBER = 7

CODE_REPLY = json.dumps(
    {"summary": "add file", "files": [{"path": "a.go", "content": "package a"}]}
)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def reply(text: str, input_tokens: int = 100, output_tokens: int = 50, cost: float = 0.01):
    return AssistantReply(
        text=text,
        usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens, cost_usd=cost),
    )


@pytest.fixture
def config(tmp_path) -> IssuesmithConfig:
    return IssuesmithConfig(
        _env_file=None,
        repositories=[f"{OWNER}/{REPO}"],
        state_db_path=tmp_path / "state.db",
        assistant_api_key="sk-test",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_github() -> AsyncMock:
    gh = AsyncMock(spec=GitHubClient)
    gh.get_authenticated_user = AsyncMock(return_value=IDENTITY)
    gh.get_issue = AsyncMock(
        return_value=Issue(
            number=ISSUE_NUMBER,
            title="Add health check endpoint",
            body="Expose GET /health returning 200.",
            author="alice",
        )
    )
    gh.list_assigned_issues = AsyncMock(
        return_value=[Issue(number=ISSUE_NUMBER, title="Add health check endpoint")]
    )
    gh.list_issue_comments = AsyncMock(return_value=[])
    gh.list_review_comments = AsyncMock(return_value=[])
    gh.get_repository = AsyncMock(
        return_value=RepositoryInfo(default_branch="main", language="Go")
    )
    gh.create_branch = AsyncMock(return_value=None)
    gh.put_file = AsyncMock(return_value=None)
    gh.create_pr = AsyncMock(return_value=101)
    gh.add_comment = AsyncMock(return_value=None)
    gh.close_issue = AsyncMock(return_value=None)
    gh.get_pull_request = AsyncMock(
        return_value=PullRequest(
            number=101, body=f"Fixes #{ISSUE_NUMBER}\n\nadd file", head_ref="issuesmith/issue-7"
        )
    )
    return gh


@pytest.fixture
def mock_assistant() -> AsyncMock:
    assistant = AsyncMock(spec=AssistantClient)
    assistant.send = AsyncMock(return_value=reply("Could you clarify the response format?"))
    return assistant


@pytest.fixture
async def store(tmp_path, clock) -> StateStore:
    s = StateStore(tmp_path / "state.db", clock=clock)
    await s.init_db()
    return s


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def agent(config, mock_github, mock_assistant, store, sleep, clock) -> IssueAgent:
    return IssueAgent(
        config, mock_github, mock_assistant, store, IDENTITY, sleep=sleep, clock=clock
    )


@pytest.fixture
def seed(store):
    async def _seed(status: Status, **fields) -> IssueRecord:
        record = IssueRecord(owner=OWNER, repo=REPO, issue_number=ISSUE_NUMBER, status=status)
        for name, value in fields.items():
            setattr(record, name, value)
        if not record.conversation:
            record.append(Role.USER, "Issue Title: Add health check endpoint\n\nIssue Description:\n")
            record.append(Role.ASSISTANT, "Could you clarify the response format?")
        return await store.save(record)

    return _seed
