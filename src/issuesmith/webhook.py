"""FastAPI webhook ingress -- feeds GitHub events into the same workflow as polling."""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import partial
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request

from issuesmith import prompts
from issuesmith.config import IssuesmithConfig
from issuesmith.dispatch import IssueDispatcher, issue_key
from issuesmith.heuristics import extract_issue_number
from issuesmith.models import Comment
from issuesmith.workflow import IssueAgent

log = structlog.get_logger()

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"


def verify_signature(secret: str, body: bytes, signature_header: str | None) -> bool:
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header)


def create_app(
    config: IssuesmithConfig,
    agent: IssueAgent,
    dispatcher: IssueDispatcher,
    identity: str,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("webhook_started", identity=identity, signed=bool(config.webhook_secret))
        yield
        log.info("webhook_stopped", pending=dispatcher.pending)

    app = FastAPI(title="issuesmith webhook", lifespan=lifespan)
    app.state.config = config
    app.state.agent = agent
    app.state.dispatcher = dispatcher
    app.state.identity = identity

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.post("/webhook")
    async def webhook(request: Request) -> dict[str, str]:
        body = await request.body()
        if config.webhook_secret and not verify_signature(
            config.webhook_secret, body, request.headers.get(SIGNATURE_HEADER)
        ):
            log.warning("webhook_bad_signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise HTTPException(status_code=400, detail="Invalid JSON payload") from e
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON payload")

        event = request.headers.get(EVENT_HEADER, "")
        if event == "ping":
            return {"message": "pong"}

        handler = _HANDLERS.get(event)
        if handler is None:
            log.debug("webhook_event_ignored", event=event)
            return {"status": "ignored"}
        return handler(payload, agent, dispatcher, identity)

    return app


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def _repo_parts(payload: dict[str, Any]) -> tuple[str, str]:
    repository = _section(payload, "repository")
    owner = _section(repository, "owner").get("login") or ""
    name = repository.get("name") or ""
    if not owner or not name:
        log.warning("webhook_payload_invalid", field="repository")
        raise HTTPException(status_code=400, detail="Missing repository owner or name")
    return owner, name


def _require_number(obj: dict[str, Any], field: str) -> int:
    number = obj.get("number")
    if not isinstance(number, int) or isinstance(number, bool) or number <= 0:
        log.warning("webhook_payload_invalid", field=field)
        raise HTTPException(status_code=400, detail=f"Missing or invalid {field}.number")
    return number


def _on_issues(
    payload: dict[str, Any], agent: IssueAgent, dispatcher: IssueDispatcher, identity: str
) -> dict[str, str]:
    assignee = _section(payload, "assignee").get("login", "")
    if payload.get("action") != "assigned" or assignee != identity:
        return {"status": "ignored"}

    owner, repo = _repo_parts(payload)
    number = _require_number(_section(payload, "issue"), "issue")
    dispatcher.submit(
        issue_key(owner, repo, number),
        partial(agent.handle_issue_assignment, owner, repo, number),
    )
    log.info("webhook_issue_assigned", repo=f"{owner}/{repo}", number=number)
    return {"status": "accepted"}


def _on_issue_comment(
    payload: dict[str, Any], agent: IssueAgent, dispatcher: IssueDispatcher, identity: str
) -> dict[str, str]:
    issue = _section(payload, "issue")
    comment = _section(payload, "comment")
    author = _section(comment, "user").get("login", "")
    if payload.get("action") != "created" or "pull_request" in issue or author == identity:
        return {"status": "ignored"}

    owner, repo = _repo_parts(payload)
    number = _require_number(issue, "issue")
    dispatcher.submit(
        issue_key(owner, repo, number),
        partial(agent.handle_issue_comment, owner, repo, number, comment.get("body") or ""),
    )
    log.info("webhook_issue_comment", repo=f"{owner}/{repo}", number=number, author=author)
    return {"status": "accepted"}


def _on_review_comment(
    payload: dict[str, Any], agent: IssueAgent, dispatcher: IssueDispatcher, identity: str
) -> dict[str, str]:
    comment = _section(payload, "comment")
    author = _section(comment, "user").get("login", "")
    if payload.get("action") != "created" or author == identity:
        return {"status": "ignored"}

    owner, repo = _repo_parts(payload)
    pr = _section(payload, "pull_request")
    pr_number = _require_number(pr, "pull_request")
    # Serialize with the linked issue's poll/webhook work when the PR names it
    linked = extract_issue_number(pr.get("body") or "")
    key = issue_key(owner, repo, linked or pr_number)

    try:
        body = prompts.review_comment_text(Comment.from_api(comment))
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        log.warning("webhook_payload_invalid", field="comment", error=str(e))
        raise HTTPException(status_code=400, detail="Malformed review comment") from e

    dispatcher.submit(key, partial(agent.handle_review_comment, owner, repo, pr_number, body))
    log.info("webhook_review_comment", repo=f"{owner}/{repo}", pr=pr_number, author=author)
    return {"status": "accepted"}


_HANDLERS = {
    "issues": _on_issues,
    "issue_comment": _on_issue_comment,
    "pull_request_review_comment": _on_review_comment,
}
