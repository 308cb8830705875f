"""Issue workflow. The persisted record status IS the state machine.

analyzing -> waiting_for_clarification | ready_to_implement -> implementing
          -> pr_created (-> reviewing) | completed
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog

from issuesmith import prompts
from issuesmith.assistant import AssistantClient, AssistantError, AssistantReply
from issuesmith.changeset import parse_change_set
from issuesmith.config import IssuesmithConfig
from issuesmith.github import GitHubClient, GitHubError
from issuesmith.heuristics import (
    QUESTION,
    backoff_delay,
    extract_issue_number,
    is_asking_question,
    is_empty_repository_error,
    is_rate_limit_error,
    is_retryable_error,
)
from issuesmith.models import ChangeSet, IssueRecord, Message, Role, Status
from issuesmith.state import StateStore

log = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]


class WorkflowError(Exception):
    """The workflow cannot act on an event (no record, unlinked PR)."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IssueAgent:
    def __init__(
        self,
        config: IssuesmithConfig,
        github: GitHubClient,
        assistant: AssistantClient,
        store: StateStore,
        identity: str,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self.github = github
        self.assistant = assistant
        self.store = store
        self.identity = identity
        self.question_phrases = QUESTION.with_phrases(config.question_phrases)
        self._sleep = sleep
        self._clock = clock

    # -- Events --

    async def handle_issue_assignment(self, owner: str, repo: str, issue_number: int) -> None:
        """Analyze a newly assigned issue and either ask questions or start work."""
        issue = await self.github.get_issue(owner, repo, issue_number)
        record = await self.store.get(owner, repo, issue_number)
        if record is not None and record.status != Status.ANALYZING:
            log.info("assignment_already_tracked", issue=record.issue_ref, status=record.status)
            return

        if record is None:
            record = IssueRecord(owner=owner, repo=repo, issue_number=issue_number)
            record.comments_seen_at = self._clock()
            record.append(Role.USER, prompts.initial_issue_message(issue.title, issue.body))
            await self._load_existing_comments(record)

        log.info("issue_analysis_started", issue=record.issue_ref, context=len(record.conversation))
        if len(record.conversation) > 1:
            reply = await self.assistant.send(
                record.conversation, prompts.CONFIRM_READINESS_SYSTEM
            )
        else:
            analyze = Message(Role.USER, prompts.analyze_issue_prompt(issue.title, issue.body))
            reply = await self.assistant.send([analyze], prompts.ANALYZE_SYSTEM)
        self._record_reply(record, reply)

        # Only the issue and the first reply: anything longer was already discussed
        if len(record.conversation) <= 2:
            await self.github.add_comment(
                owner, repo, issue_number, prompts.greeting_comment(reply.text)
            )

        asking = is_asking_question(reply.text, self.question_phrases)
        record.status = Status.WAITING_FOR_CLARIFICATION if asking else Status.READY_TO_IMPLEMENT
        await self.store.save(record)
        log.info("issue_analyzed", issue=record.issue_ref, status=record.status)

        if record.status == Status.READY_TO_IMPLEMENT:
            await self.start_implementation(owner, repo, issue_number)

    async def handle_issue_comment(
        self, owner: str, repo: str, issue_number: int, body: str
    ) -> None:
        record = await self._require(owner, repo, issue_number)
        record.comments_seen_at = self._clock()
        record.append(Role.USER, body)
        reply = await self.assistant.send(record.conversation, prompts.COMMENT_REPLY_SYSTEM)
        self._record_reply(record, reply)
        await self.github.add_comment(owner, repo, issue_number, reply.text)

        if record.status == Status.WAITING_FOR_CLARIFICATION and not is_asking_question(
            reply.text, self.question_phrases
        ):
            record.status = Status.READY_TO_IMPLEMENT
            await self.store.save(record)
            log.info("clarification_resolved", issue=record.issue_ref)
            await self.start_implementation(owner, repo, issue_number)
            return

        await self.store.save(record)
        log.info("comment_handled", issue=record.issue_ref, status=record.status)

    async def start_implementation(self, owner: str, repo: str, issue_number: int) -> None:
        record = await self._require(owner, repo, issue_number)
        record.status = Status.IMPLEMENTING
        await self.store.save(record)
        log.info("implementation_started", issue=record.issue_ref, branch=record.branch_name)

        await self.github.add_comment(
            owner, repo, issue_number, prompts.starting_work_comment(issue_number)
        )

        repo_info = await self.github.get_repository(owner, repo)
        default_branch = repo_info.default_branch or "main"
        branch = await self._ensure_branch(record, default_branch)
        issue = await self.github.get_issue(owner, repo, issue_number)

        record.append(Role.USER, prompts.implementation_request(issue_number))
        reply = await self._generate_code(
            record,
            prompts.codegen_system_prompt(owner, repo, repo_info.language, issue_number),
        )
        self._record_reply(record, reply)

        change_set = parse_change_set(reply.text)
        if change_set.is_empty:
            await self.github.add_comment(
                owner, repo, issue_number, prompts.fallback_comment(reply.text)
            )
            record.status = Status.WAITING_FOR_CLARIFICATION
            await self.store.save(record)
            log.warning("implementation_unparseable", issue=record.issue_ref)
            return

        await self._apply(record, change_set, branch, f"for issue #{issue_number}")

        if branch == default_branch:
            await self._complete_direct_commit(record, default_branch, change_set)
            return

        if record.pr_number:
            record.status = Status.PR_CREATED
            await self.store.save(record)
            await self.github.add_comment(
                owner,
                repo,
                issue_number,
                prompts.pr_updated_comment(record.pr_number, change_set),
            )
            log.info("pr_updated", issue=record.issue_ref, pr=record.pr_number)
            return

        pr_number = await self.github.create_pr(
            owner,
            repo,
            branch,
            default_branch,
            prompts.pr_title(issue.title),
            prompts.pr_body(issue_number, change_set),
        )
        record.pr_number = pr_number
        record.status = Status.PR_CREATED
        await self.store.save(record)
        await self.github.add_comment(
            owner, repo, issue_number, prompts.pr_created_comment(pr_number)
        )
        log.info("implementation_done", issue=record.issue_ref, pr=pr_number)

    async def handle_review_comment(
        self, owner: str, repo: str, pr_number: int, body: str
    ) -> None:
        pr = await self.github.get_pull_request(owner, repo, pr_number)
        issue_number = extract_issue_number(pr.body)
        if not issue_number:
            raise WorkflowError(f"PR {owner}/{repo}#{pr_number} has no linked issue marker")

        record = await self._require(owner, repo, issue_number)
        record.status = Status.REVIEWING
        record.comments_seen_at = self._clock()
        if record.pr_number is None:
            record.pr_number = pr_number
        if not record.branch_name:
            record.branch_name = pr.head_ref

        record.append(Role.USER, prompts.review_feedback_message(body))
        reply = await self.assistant.send(record.conversation, prompts.review_system_prompt())
        self._record_reply(record, reply)

        change_set = parse_change_set(reply.text)
        await self._apply(
            record, change_set, record.branch_name, f"to address review feedback for issue #{issue_number}"
        )
        await self.store.save(record)
        await self.github.add_comment(
            owner, repo, pr_number, prompts.review_update_comment(change_set, reply.text)
        )
        log.info(
            "review_handled",
            issue=record.issue_ref,
            pr=pr_number,
            files=len(change_set.files),
        )

    # -- Helpers --

    async def _require(self, owner: str, repo: str, issue_number: int) -> IssueRecord:
        record = await self.store.get(owner, repo, issue_number)
        if record is None:
            raise WorkflowError(f"No record for {owner}/{repo}#{issue_number}")
        return record

    def _record_reply(self, record: IssueRecord, reply: AssistantReply) -> None:
        record.append(Role.ASSISTANT, reply.text)
        record.add_usage(reply.usage)

    async def _load_existing_comments(self, record: IssueRecord) -> None:
        try:
            comments = await self.github.list_issue_comments(
                record.owner, record.repo, record.issue_number
            )
        except GitHubError as e:
            log.warning("existing_comments_unavailable", issue=record.issue_ref, error=str(e))
            return
        for comment in comments:
            role = Role.ASSISTANT if comment.author == self.identity else Role.USER
            record.append(role, comment.body)
        if comments:
            log.info("existing_comments_loaded", issue=record.issue_ref, count=len(comments))

    async def _ensure_branch(self, record: IssueRecord, default_branch: str) -> str:
        if record.branch_name:
            log.info("branch_reused", issue=record.issue_ref, branch=record.branch_name)
            return record.branch_name

        branch = f"{self.config.branch_prefix}/issue-{record.issue_number}"
        try:
            await self.github.create_branch(record.owner, record.repo, branch, default_branch)
        except GitHubError as e:
            if not is_empty_repository_error(e.stderr):
                raise
            log.info("empty_repository_direct_commit", issue=record.issue_ref, branch=default_branch)
            branch = default_branch

        record.branch_name = branch
        await self.store.save(record)
        return branch

    async def _generate_code(self, record: IssueRecord, system_prompt: str) -> AssistantReply:
        """Call the assistant, retrying rate limits and server errors with backoff."""
        ceiling = self.config.max_generation_attempts
        attempt = 0
        while True:
            try:
                return await self.assistant.send(record.conversation, system_prompt)
            except AssistantError as e:
                if not is_retryable_error(e):
                    raise
                attempt += 1
                if ceiling > 0 and attempt >= ceiling:
                    log.error("codegen_gave_up", issue=record.issue_ref, attempts=attempt)
                    raise
                delay = backoff_delay(attempt - 1, self.config.generation_backoff_s)
                log.warning(
                    "codegen_retry",
                    issue=record.issue_ref,
                    kind="rate_limit" if is_rate_limit_error(e) else "server_error",
                    delay_s=delay,
                    next_attempt=attempt + 1,
                )
                await self._sleep(delay)

    async def _apply(
        self, record: IssueRecord, change_set: ChangeSet, branch: str, purpose: str
    ) -> None:
        for path, content in change_set.files.items():
            await self.github.put_file(
                record.owner,
                record.repo,
                path,
                content,
                branch,
                f"Update {path} {purpose}",
            )
        if change_set.files:
            log.info("changes_applied", issue=record.issue_ref, branch=branch, files=len(change_set.files))

    async def _complete_direct_commit(
        self, record: IssueRecord, default_branch: str, change_set: ChangeSet
    ) -> None:
        record.status = Status.COMPLETED
        record.completed_at = self._clock()
        await self.store.save(record)
        await self.github.add_comment(
            record.owner,
            record.repo,
            record.issue_number,
            prompts.direct_commit_comment(default_branch, change_set),
        )
        try:
            await self.github.close_issue(record.owner, record.repo, record.issue_number)
        except GitHubError as e:
            log.warning("issue_close_failed", issue=record.issue_ref, error=str(e))
        log.info("implementation_done", issue=record.issue_ref, direct_commit=True)
