from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from conftest import IDENTITY, ISSUE_NUMBER, OWNER, REPO, reply

from issuesmith import prompts
from issuesmith.dispatch import issue_key
from issuesmith.github import GitHubError
from issuesmith.models import Comment, Issue, Status
from issuesmith.scheduler import Scheduler, parse_repository
from issuesmith.workflow import IssueAgent


@pytest.fixture
def mock_agent() -> AsyncMock:
    return AsyncMock(spec=IssueAgent)


@pytest.fixture
def scheduler(config, mock_github, store, mock_agent, clock) -> Scheduler:
    return Scheduler(config, mock_github, store, mock_agent, IDENTITY, clock=clock)


def _comment(clock, author: str, body: str, minutes: int, comment_id: int = 1, **kwargs):
    return Comment(
        id=comment_id,
        author=author,
        body=body,
        created_at=clock.now + timedelta(minutes=minutes),
        **kwargs,
    )


class TestParseRepository:
    def test_owner_and_name(self):
        assert parse_repository("octo/widgets") == ("octo", "widgets")
        assert parse_repository("  octo/widgets ") == ("octo", "widgets")

    @pytest.mark.parametrize("entry", ["widgets", "octo/", "/widgets", "a/b/c", ""])
    def test_invalid(self, entry):
        assert parse_repository(entry) is None


class TestNewIssues:
    @pytest.mark.asyncio
    async def test_untracked_issue_dispatches_assignment(self, scheduler, mock_agent, mock_github):
        await scheduler.poll_once()

        mock_github.list_assigned_issues.assert_awaited_once_with(OWNER, REPO, IDENTITY)
        mock_agent.handle_issue_assignment.assert_awaited_once_with(OWNER, REPO, ISSUE_NUMBER)

    @pytest.mark.asyncio
    async def test_repeated_polls_greet_once(self, config, mock_github, store, agent, clock):
        scheduler = Scheduler(config, mock_github, store, agent, IDENTITY, clock=clock)

        await scheduler.poll_once()
        await scheduler.poll_once()

        greetings = [
            c for c in mock_github.add_comment.await_args_list if c.args[3].startswith("Hi!")
        ]
        assert len(greetings) == 1
        record = await store.get(OWNER, REPO, ISSUE_NUMBER)
        assert record.status == Status.WAITING_FOR_CLARIFICATION


class TestReconciliation:
    @pytest.mark.asyncio
    async def test_own_ready_comment_promotes_record(
        self, scheduler, mock_agent, mock_github, store, seed, clock
    ):
        await seed(Status.WAITING_FOR_CLARIFICATION)
        mock_github.list_issue_comments.return_value = [
            _comment(clock, IDENTITY, "Could you clarify the format?", -30, 1),
            _comment(clock, IDENTITY, "Got it. I'll create a PR for this.", -10, 2),
        ]

        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)

        record = await store.get(OWNER, REPO, ISSUE_NUMBER)
        assert record.status == Status.READY_TO_IMPLEMENT
        mock_agent.start_implementation.assert_awaited_once_with(OWNER, REPO, ISSUE_NUMBER)
        mock_agent.handle_issue_comment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reconciled_record_is_not_rechecked(
        self, scheduler, mock_agent, mock_github, seed, clock
    ):
        await seed(Status.WAITING_FOR_CLARIFICATION)
        mock_github.list_issue_comments.return_value = [
            _comment(clock, IDENTITY, "I'll proceed with the implementation.", -5),
        ]

        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)
        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)

        assert mock_github.list_issue_comments.await_count == 1
        assert mock_agent.start_implementation.await_count == 2

    @pytest.mark.asyncio
    async def test_other_authors_cannot_promote(
        self, scheduler, mock_agent, mock_github, store, seed, clock
    ):
        await seed(Status.WAITING_FOR_CLARIFICATION)
        mock_github.list_issue_comments.return_value = [
            _comment(clock, "alice", "I'll create a PR for this myself", 5),
        ]

        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)

        record = await store.get(OWNER, REPO, ISSUE_NUMBER)
        assert record.status == Status.WAITING_FOR_CLARIFICATION
        mock_agent.start_implementation.assert_not_awaited()
        mock_agent.handle_issue_comment.assert_awaited_once_with(
            OWNER, REPO, ISSUE_NUMBER, "I'll create a PR for this myself"
        )

    @pytest.mark.asyncio
    async def test_latest_own_comment_decides(
        self, scheduler, mock_agent, mock_github, store, seed, clock
    ):
        await seed(Status.WAITING_FOR_CLARIFICATION)
        mock_github.list_issue_comments.return_value = [
            _comment(clock, IDENTITY, "I'll proceed once this is settled.", -60, 1),
            _comment(clock, IDENTITY, "Could you clarify the port?", -30, 2),
        ]

        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)

        record = await store.get(OWNER, REPO, ISSUE_NUMBER)
        assert record.status == Status.WAITING_FOR_CLARIFICATION
        mock_agent.start_implementation.assert_not_awaited()
        mock_agent.handle_issue_comment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_signed_status_comment_blocks_promotion(
        self, scheduler, mock_agent, mock_github, store, seed, clock
    ):
        await seed(Status.WAITING_FOR_CLARIFICATION)
        fallback = prompts.fallback_comment("Sure, proceeding with the change: add a /health route.")
        mock_github.list_issue_comments.return_value = [
            _comment(clock, IDENTITY, "Hi! I have enough context, I'll create a PR for this.", -30, 1),
            _comment(clock, IDENTITY, prompts.starting_work_comment(ISSUE_NUMBER), -20, 2),
            _comment(clock, IDENTITY, fallback, -10, 3),
        ]

        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)

        record = await store.get(OWNER, REPO, ISSUE_NUMBER)
        assert record.status == Status.WAITING_FOR_CLARIFICATION
        mock_agent.start_implementation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unparseable_implementation_waits_for_a_human(
        self, config, mock_github, mock_assistant, store, agent, clock
    ):
        posted: list[Comment] = []

        async def _add_comment(owner, repo, number, body):
            clock.advance(seconds=1)
            posted.append(
                Comment(id=len(posted) + 1, author=IDENTITY, body=body, created_at=clock.now)
            )

        mock_github.add_comment.side_effect = _add_comment
        mock_github.list_issue_comments.side_effect = lambda *args: list(posted)
        mock_assistant.send.side_effect = [
            reply("I have enough context, I'll create a PR for this."),
            reply("Sure, proceeding with the change: add a /health route returning 200."),
        ]
        scheduler = Scheduler(config, mock_github, store, agent, IDENTITY, clock=clock)

        await scheduler.poll_once()
        for _ in range(3):
            clock.advance(minutes=1)
            await scheduler.poll_once()

        record = await store.get(OWNER, REPO, ISSUE_NUMBER)
        assert record.status == Status.WAITING_FOR_CLARIFICATION
        assert mock_assistant.send.await_count == 2
        fallbacks = [c for c in posted if "expected format" in c.body]
        assert len(fallbacks) == 1
        mock_github.create_pr.assert_not_awaited()


class TestStuckRecovery:
    @pytest.mark.asyncio
    async def test_recent_implementation_left_alone(
        self, scheduler, mock_agent, store, seed, clock
    ):
        await seed(Status.IMPLEMENTING, branch_name="issuesmith/issue-7")
        clock.advance(minutes=9)

        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)

        record = await store.get(OWNER, REPO, ISSUE_NUMBER)
        assert record.status == Status.IMPLEMENTING
        mock_agent.start_implementation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_implementation_restarted(self, scheduler, mock_agent, store, seed, clock):
        await seed(Status.IMPLEMENTING, branch_name="issuesmith/issue-7")
        clock.advance(minutes=11)

        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)

        record = await store.get(OWNER, REPO, ISSUE_NUMBER)
        assert record.status == Status.READY_TO_IMPLEMENT
        assert record.branch_name == "issuesmith/issue-7"
        mock_agent.start_implementation.assert_awaited_once_with(OWNER, REPO, ISSUE_NUMBER)


class TestNewComments:
    @pytest.mark.asyncio
    async def test_comments_after_last_update_are_merged(
        self, scheduler, mock_agent, mock_github, seed, clock
    ):
        await seed(Status.WAITING_FOR_CLARIFICATION)
        mock_github.list_issue_comments.return_value = [
            _comment(clock, "alice", "old", -60, 1),
            _comment(clock, "alice", "second", 10, 2),
            _comment(clock, "bob", "first", 5, 3),
            _comment(clock, IDENTITY, "Thanks, noted.", 6, 4),
        ]

        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)

        mock_agent.handle_issue_comment.assert_awaited_once_with(
            OWNER, REPO, ISSUE_NUMBER, "first\n\nsecond"
        )

    @pytest.mark.asyncio
    async def test_comment_posted_during_slow_reply_is_not_lost(
        self, scheduler, mock_agent, mock_github, seed, clock
    ):
        await seed(
            Status.WAITING_FOR_CLARIFICATION,
            comments_seen_at=clock.now - timedelta(minutes=3),
        )
        mock_github.list_issue_comments.return_value = [
            _comment(clock, "alice", "already answered", -5, 1),
            _comment(clock, "alice", "use port 8080", -1, 2),
        ]

        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)

        mock_agent.handle_issue_comment.assert_awaited_once_with(
            OWNER, REPO, ISSUE_NUMBER, "use port 8080"
        )

    @pytest.mark.asyncio
    async def test_no_new_comments_no_event(self, scheduler, mock_agent, seed):
        await seed(Status.WAITING_FOR_CLARIFICATION)

        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)

        mock_agent.handle_issue_comment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_review_comments_carry_location(
        self, scheduler, mock_agent, mock_github, seed, clock
    ):
        await seed(Status.PR_CREATED, pr_number=101, branch_name="issuesmith/issue-7")
        mock_github.list_review_comments.return_value = [
            _comment(clock, "alice", "rename", 5, 9, path="app.py", line=3),
        ]

        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)

        mock_github.list_review_comments.assert_awaited_once_with(OWNER, REPO, 101)
        mock_agent.handle_review_comment.assert_awaited_once_with(
            OWNER, REPO, 101, "app.py:3\nrename"
        )

    @pytest.mark.asyncio
    async def test_completed_record_is_idle(self, scheduler, mock_agent, mock_github, seed):
        await seed(Status.COMPLETED, branch_name="main")

        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)

        mock_github.list_issue_comments.assert_not_awaited()
        mock_github.list_review_comments.assert_not_awaited()
        mock_agent.start_implementation.assert_not_awaited()


class TestPollIsolation:
    @pytest.mark.asyncio
    async def test_invalid_repository_skipped(self, scheduler, mock_github, mock_agent):
        scheduler.config.repositories = ["not-a-repo", f"{OWNER}/{REPO}"]

        await scheduler.poll_once()

        mock_github.list_assigned_issues.assert_awaited_once_with(OWNER, REPO, IDENTITY)
        mock_agent.handle_issue_assignment.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_listing_failure_skips_only_that_repository(
        self, scheduler, mock_github, mock_agent
    ):
        scheduler.config.repositories = ["octo/broken", f"{OWNER}/{REPO}"]

        async def _list(owner, repo, assignee):
            if repo == "broken":
                raise GitHubError(("api",), "HTTP 404: Not Found")
            return [Issue(number=ISSUE_NUMBER)]

        mock_github.list_assigned_issues.side_effect = _list

        await scheduler.poll_once()

        mock_agent.handle_issue_assignment.assert_awaited_once_with(OWNER, REPO, ISSUE_NUMBER)

    @pytest.mark.asyncio
    async def test_issue_failure_does_not_stop_poll(self, scheduler, mock_github, mock_agent):
        mock_github.list_assigned_issues.return_value = [Issue(number=7), Issue(number=8)]
        mock_agent.handle_issue_assignment.side_effect = [RuntimeError("boom"), None]

        await scheduler.poll_once()

        assert mock_agent.handle_issue_assignment.await_count == 2

    @pytest.mark.asyncio
    async def test_busy_issue_skipped(self, scheduler, mock_agent):
        lock = scheduler.dispatcher._locks.setdefault(
            issue_key(OWNER, REPO, ISSUE_NUMBER), asyncio.Lock()
        )
        await lock.acquire()
        try:
            await scheduler.poll_once()
        finally:
            lock.release()

        mock_agent.handle_issue_assignment.assert_not_awaited()


class TestProcessSingle:
    @pytest.mark.asyncio
    async def test_dispatches_issue(self, scheduler, mock_agent):
        await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)

        mock_agent.handle_issue_assignment.assert_awaited_once_with(OWNER, REPO, ISSUE_NUMBER)

    @pytest.mark.asyncio
    async def test_errors_propagate(self, scheduler, mock_agent):
        mock_agent.handle_issue_assignment.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await scheduler.process_single(OWNER, REPO, ISSUE_NUMBER)
