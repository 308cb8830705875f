"""GitHub integration via gh CLI."""

from __future__ import annotations

import asyncio
import base64
import json
import os
import re
from urllib.parse import quote

import structlog

from issuesmith.models import Comment, Issue, PullRequest, RepositoryInfo

log = structlog.get_logger()


class GitHubError(Exception):
    """A gh invocation exited non-zero. ``str(error)`` carries gh's stderr."""

    def __init__(self, args: tuple[str, ...], stderr: str, returncode: int = 1) -> None:
        self.args_used = args
        self.stderr = stderr.strip()
        self.returncode = returncode
        super().__init__(f"gh {' '.join(args[:3])} failed ({returncode}): {self.stderr}")


class GitHubClient:
    def __init__(self, token: str = "") -> None:
        self._token = token

    # -- Identity --

    async def get_authenticated_user(self) -> str:
        stdout = await self._gh("api", "user", "--jq", ".login")
        login = stdout.strip()
        if not login:
            raise GitHubError(("api", "user"), "empty login for authenticated user")
        return login

    # -- Issue operations --

    async def get_issue(self, owner: str, repo: str, number: int) -> Issue:
        data = await self._api_json(f"repos/{owner}/{repo}/issues/{number}")
        return Issue.from_api(data)

    async def list_assigned_issues(self, owner: str, repo: str, assignee: str) -> list[Issue]:
        """Open issues assigned to ``assignee``, all pages, pull requests excluded."""
        items = await self._api_paginated(
            f"repos/{owner}/{repo}/issues?state=open&assignee={quote(assignee)}"
            "&sort=created&direction=desc&per_page=100"
        )
        issues = [Issue.from_api(item) for item in items]
        return [i for i in issues if not i.is_pull_request]

    async def list_issue_comments(self, owner: str, repo: str, number: int) -> list[Comment]:
        items = await self._api_paginated(
            f"repos/{owner}/{repo}/issues/{number}/comments?per_page=100"
        )
        return [Comment.from_api(item) for item in items]

    async def add_comment(self, owner: str, repo: str, number: int, body: str) -> None:
        await self._gh(
            "api",
            f"repos/{owner}/{repo}/issues/{number}/comments",
            "-f",
            f"body={body}",
        )
        log.info("comment_posted", repo=f"{owner}/{repo}", number=number)

    async def close_issue(self, owner: str, repo: str, number: int) -> None:
        await self._gh(
            "issue",
            "close",
            str(number),
            "--repo",
            f"{owner}/{repo}",
        )
        log.info("issue_closed", repo=f"{owner}/{repo}", number=number)

    # -- Repository / branch / file operations --

    async def get_repository(self, owner: str, repo: str) -> RepositoryInfo:
        data = await self._api_json(f"repos/{owner}/{repo}")
        return RepositoryInfo(
            default_branch=data.get("default_branch") or "main",
            language=data.get("language") or "",
        )

    async def create_branch(self, owner: str, repo: str, branch: str, base: str) -> None:
        sha = (
            await self._gh(
                "api",
                f"repos/{owner}/{repo}/git/ref/heads/{quote(base)}",
                "--jq",
                ".object.sha",
            )
        ).strip()
        try:
            await self._gh(
                "api",
                f"repos/{owner}/{repo}/git/refs",
                "-f",
                f"ref=refs/heads/{branch}",
                "-f",
                f"sha={sha}",
            )
        except GitHubError as e:
            if "reference already exists" not in str(e).lower():
                raise
            log.info("branch_exists", repo=f"{owner}/{repo}", branch=branch)
            return
        log.info("branch_created", repo=f"{owner}/{repo}", branch=branch, base=base)

    async def get_file_sha(self, owner: str, repo: str, path: str, ref: str) -> str | None:
        try:
            stdout = await self._gh(
                "api",
                f"repos/{owner}/{repo}/contents/{quote(path)}?ref={quote(ref)}",
                "--jq",
                ".sha",
            )
        except GitHubError as e:
            text = str(e).lower()
            if "404" in text or "not found" in text or "empty" in text:
                return None
            raise
        return stdout.strip() or None

    async def put_file(
        self, owner: str, repo: str, path: str, content: str, branch: str, message: str
    ) -> None:
        """Create or fully replace ``path`` on ``branch``."""
        sha = await self.get_file_sha(owner, repo, path, branch)
        args = [
            "api",
            "-X",
            "PUT",
            f"repos/{owner}/{repo}/contents/{quote(path)}",
            "-f",
            f"message={message}",
            "-f",
            f"content={base64.b64encode(content.encode('utf-8')).decode('ascii')}",
            "-f",
            f"branch={branch}",
        ]
        if sha:
            args.extend(["-f", f"sha={sha}"])
        await self._gh(*args)
        log.info("file_written", repo=f"{owner}/{repo}", path=path, branch=branch, update=bool(sha))

    # -- PR operations --

    async def create_pr(
        self, owner: str, repo: str, branch: str, base: str, title: str, body: str
    ) -> int:
        stdout = await self._gh(
            "pr",
            "create",
            "--repo",
            f"{owner}/{repo}",
            "--head",
            branch,
            "--base",
            base,
            "--title",
            title,
            "--body",
            body,
        )
        match = re.search(r"/pull/(\d+)", stdout or "")
        if match:
            number = int(match.group(1))
            log.info("pr_created", repo=f"{owner}/{repo}", pr=number)
            return number
        raise GitHubError(("pr", "create"), f"Failed to parse PR number from: {stdout}")

    async def get_pull_request(self, owner: str, repo: str, pr_number: int) -> PullRequest:
        data = await self._api_json(f"repos/{owner}/{repo}/pulls/{pr_number}")
        return PullRequest.from_api(data)

    async def list_review_comments(self, owner: str, repo: str, pr_number: int) -> list[Comment]:
        items = await self._api_paginated(
            f"repos/{owner}/{repo}/pulls/{pr_number}/comments?per_page=100"
        )
        return [Comment.from_api(item) for item in items]

    # -- Internal --

    async def _api_json(self, endpoint: str) -> dict:
        stdout = await self._gh("api", endpoint)
        return json.loads(stdout) if stdout.strip() else {}

    async def _api_paginated(self, endpoint: str) -> list[dict]:
        stdout = await self._gh("api", "--paginate", endpoint)
        return _decode_pages(stdout)

    async def _gh(self, *args: str) -> str:
        env = None
        if self._token:
            env = {**os.environ, "GH_TOKEN": self._token}
        proc = await asyncio.create_subprocess_exec(
            "gh",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            log.warning("gh_error", args=args[:3], stderr=stderr.decode())
            raise GitHubError(args, stderr.decode(), proc.returncode)
        return stdout.decode()


def _decode_pages(stdout: str) -> list[dict]:
    """Flatten ``gh api --paginate`` output: one JSON array per page, back to back."""
    decoder = json.JSONDecoder()
    items: list[dict] = []
    idx = 0
    text = stdout.strip()
    while idx < len(text):
        while idx < len(text) and text[idx].isspace():
            idx += 1
        if idx >= len(text):
            break
        page, idx = decoder.raw_decode(text, idx)
        if isinstance(page, list):
            items.extend(page)
        else:
            items.append(page)
    return items
