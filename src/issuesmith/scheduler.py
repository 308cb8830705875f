"""Poll loop -- lists assigned issues and dispatches workflow events."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from functools import partial

import structlog

from issuesmith import prompts
from issuesmith.config import IssuesmithConfig
from issuesmith.dispatch import IssueDispatcher, issue_key
from issuesmith.github import GitHubClient
from issuesmith.heuristics import READY_TO_PROCEED, signals_ready_to_proceed
from issuesmith.models import REVIEW_STATUSES, Comment, IssueRecord, Status
from issuesmith.state import StateStore
from issuesmith.workflow import IssueAgent

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def parse_repository(entry: str) -> tuple[str, str] | None:
    parts = entry.strip().split("/")
    if len(parts) != 2 or not all(parts):
        return None
    return parts[0], parts[1]


class Scheduler:
    def __init__(
        self,
        config: IssuesmithConfig,
        github: GitHubClient,
        store: StateStore,
        agent: IssueAgent,
        identity: str,
        dispatcher: IssueDispatcher | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self.github = github
        self.store = store
        self.agent = agent
        self.identity = identity
        self.dispatcher = dispatcher or IssueDispatcher(config.max_concurrent_issues)
        self.ready_phrases = READY_TO_PROCEED.with_phrases(config.ready_phrases)
        self._clock = clock
        self._running = True

    async def start(self) -> None:
        log.info(
            "scheduler_started",
            identity=self.identity,
            repositories=self.config.repositories,
            interval_s=self.config.poll_interval_s,
        )
        try:
            await self._poll_loop()
        except asyncio.CancelledError:
            log.info("scheduler_cancelled")
        finally:
            log.info("scheduler_stopped")

    async def stop(self) -> None:
        self._running = False

    async def process_single(self, owner: str, repo: str, issue_number: int) -> None:
        """Run one dispatch step for a single issue; errors propagate to the caller."""
        await self.dispatcher.run(
            issue_key(owner, repo, issue_number),
            partial(self._dispatch, owner, repo, issue_number),
        )

    # -- Main loop --

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except Exception:
                log.exception("poll_error")
            if not self._running:
                break
            await asyncio.sleep(self.config.poll_interval_s)

    async def poll_once(self) -> None:
        for entry in self.config.repositories:
            parsed = parse_repository(entry)
            if parsed is None:
                log.error("invalid_repository", repository=entry)
                continue
            owner, repo = parsed

            try:
                issues = await self.github.list_assigned_issues(owner, repo, self.identity)
            except Exception:
                log.exception("poll_repository_error", repository=entry)
                continue
            log.info("poll_repository", repository=entry, issues=len(issues))

            for issue in issues:
                key = issue_key(owner, repo, issue.number)
                if self.dispatcher.is_busy(key):
                    log.info("poll_issue_busy", issue=key)
                    continue
                try:
                    await self.dispatcher.run(
                        key, partial(self._dispatch, owner, repo, issue.number)
                    )
                except Exception:
                    log.exception("poll_issue_error", issue=key)

    # -- Per-issue dispatch --

    async def _dispatch(self, owner: str, repo: str, issue_number: int) -> None:
        record = await self.store.get(owner, repo, issue_number)
        if record is None:
            await self.agent.handle_issue_assignment(owner, repo, issue_number)
            return

        comments: list[Comment] | None = None
        if record.status == Status.WAITING_FOR_CLARIFICATION:
            comments = await self.github.list_issue_comments(owner, repo, issue_number)
            if await self._reconcile(record, comments):
                record = await self.store.get(owner, repo, issue_number)
                if record is None:
                    return

        if record.status == Status.IMPLEMENTING and self._is_stuck(record):
            log.warning(
                "stuck_implementation_reset",
                issue=record.issue_ref,
                updated_at=record.updated_at.isoformat() if record.updated_at else None,
                branch=record.branch_name,
            )
            record.status = Status.READY_TO_IMPLEMENT
            await self.store.save(record)

        if record.status == Status.READY_TO_IMPLEMENT:
            await self.agent.start_implementation(owner, repo, issue_number)
            return

        if record.status == Status.WAITING_FOR_CLARIFICATION:
            if comments is None:
                comments = await self.github.list_issue_comments(owner, repo, issue_number)
            new = self._new_comments(record, comments)
            if new:
                log.info("new_comments", issue=record.issue_ref, count=len(new))
                body = "\n\n".join(c.body for c in new)
                await self.agent.handle_issue_comment(owner, repo, issue_number, body)
            return

        if record.status in REVIEW_STATUSES and record.pr_number:
            review_comments = await self.github.list_review_comments(
                owner, repo, record.pr_number
            )
            new = self._new_comments(record, review_comments)
            if new:
                log.info(
                    "new_review_comments",
                    issue=record.issue_ref,
                    pr=record.pr_number,
                    count=len(new),
                )
                body = "\n\n".join(prompts.review_comment_text(c) for c in new)
                await self.agent.handle_review_comment(owner, repo, record.pr_number, body)

    async def _reconcile(self, record: IssueRecord, comments: list[Comment]) -> bool:
        """Promote to ready when our own latest comment already announced the work.

        A signed status comment (starting work, fallback) as the latest one means
        the workflow already acted on that announcement; a human must answer first.
        """
        own = [c for c in comments if c.author == self.identity]
        if not own:
            return False
        latest = max(own, key=lambda c: c.created_at)
        if prompts.SIGNATURE in latest.body:
            return False
        if not signals_ready_to_proceed(latest.body, self.ready_phrases):
            return False

        record.status = Status.READY_TO_IMPLEMENT
        await self.store.save(record)
        log.info("reconciled_ready", issue=record.issue_ref, comment_id=latest.id)
        return True

    def _is_stuck(self, record: IssueRecord) -> bool:
        if record.updated_at is None:
            return False
        elapsed = (self._clock() - record.updated_at).total_seconds()
        return elapsed > self.config.stuck_threshold_s

    def _new_comments(self, record: IssueRecord, comments: list[Comment]) -> list[Comment]:
        watermark = record.comments_seen_at or record.updated_at
        new = [
            c
            for c in comments
            if c.author != self.identity and (watermark is None or c.created_at > watermark)
        ]
        return sorted(new, key=lambda c: c.created_at)

