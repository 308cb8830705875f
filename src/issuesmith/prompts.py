"""System prompts and tracker-visible comment bodies."""

from __future__ import annotations

from collections.abc import Iterable

from issuesmith.heuristics import issue_marker
from issuesmith.models import ChangeSet, Comment

SIGNATURE = "_Automated by issuesmith_"

# -- System prompts --

ANALYZE_SYSTEM = """You are a helpful AI coding assistant that analyzes GitHub issues.
Your job is to:
1. Understand what the issue is asking for
2. Ask clarifying questions if anything is unclear
3. Provide a clear summary of what needs to be done

Be concise and professional."""

CONFIRM_READINESS_SYSTEM = (
    "You are a helpful coding assistant. Review the entire conversation and determine "
    "if you have enough information to proceed with implementation. If you do, say so "
    "clearly. If not, ask specific clarifying questions."
)

COMMENT_REPLY_SYSTEM = (
    "You are a helpful coding assistant working on a GitHub issue. "
    "Respond to the user's comment."
)

_OUTPUT_FORMAT = """Respond with ONLY a JSON object, no prose before or after it:

```json
{"summary": "One paragraph describing the change",
  "files": [{"path": "relative/path/to/file.ext", "content": "complete new file content"}]}
```

Every entry in "files" must contain the COMPLETE content of the file, not a diff or excerpt.
Paths are relative to the repository root."""


def analyze_issue_prompt(title: str, body: str) -> str:
    return f"""Please analyze this GitHub issue:

Title: {title}

Description:
{body or "(no description)"}

Provide:
1. A clear summary of what this issue is asking for
2. Any clarifying questions you have
3. If everything is clear, confirm you understand and are ready to create a PR"""


def initial_issue_message(title: str, body: str) -> str:
    return f"Issue Title: {title}\n\nIssue Description:\n{body}"


def codegen_system_prompt(owner: str, repo: str, language: str, issue_number: int) -> str:
    return f"""You are an expert software engineer working on a GitHub issue.
You have full access to the repository and need to implement the requested changes.

Programming Language: {language or "unknown"}
Repository Context: Repository: {owner}/{repo}, Language: {language or "unknown"}

Your task: Implement the changes for issue #{issue_number}

{_OUTPUT_FORMAT}"""


def implementation_request(issue_number: int) -> str:
    return (
        f"Implement the changes for issue #{issue_number} now. "
        "Return the complete content of every file you create or modify."
    )


def review_system_prompt() -> str:
    return f"""You are an expert software engineer responding to code review feedback.
Your job is to:
1. Understand the feedback
2. Make the necessary changes
3. Return the updated files

{_OUTPUT_FORMAT}"""


def review_feedback_message(body: str) -> str:
    return f"Review feedback: {body}"


# -- Comment bodies --


def files_changed(paths: Iterable[str]) -> str:
    listing = "\n".join(f"- `{path}`" for path in paths)
    if not listing:
        return ""
    return f"**Files changed:**\n{listing}"


def _summary_with_files(change_set: ChangeSet) -> str:
    files = files_changed(change_set.files)
    if not files or files in change_set.summary:
        return change_set.summary
    return f"{change_set.summary}\n\n{files}"


def greeting_comment(reply: str) -> str:
    return f"Hi! I've been assigned to this issue. Here's my understanding:\n\n{reply}"


def starting_work_comment(issue_number: int) -> str:
    return f"Starting implementation of issue #{issue_number}. I'll report back here.\n\n{SIGNATURE}"


def fallback_comment(reply: str) -> str:
    return f"""I attempted to implement this issue, but couldn't generate files in the expected format.

Here's what I tried to generate:

{reply}

---

Could you please review this and let me know if I should try again with different instructions?

{SIGNATURE}"""


def direct_commit_comment(default_branch: str, change_set: ChangeSet) -> str:
    return f"""I've committed the changes directly to the `{default_branch}` branch since the repository was empty.

{_summary_with_files(change_set)}

Closing this issue as completed.

---

{SIGNATURE}"""


def pr_title(issue_title: str) -> str:
    return f"Fix: {issue_title}"


def pr_body(issue_number: int, change_set: ChangeSet) -> str:
    return f"""{issue_marker(issue_number)}

{_summary_with_files(change_set)}

---

This PR was automatically generated by issuesmith."""


def pr_created_comment(pr_number: int) -> str:
    return f"I've created a pull request: #{pr_number}"


def pr_updated_comment(pr_number: int, change_set: ChangeSet) -> str:
    return f"I've pushed new changes to the existing pull request #{pr_number}.\n\n{_summary_with_files(change_set)}"


def review_update_comment(change_set: ChangeSet, reply: str) -> str:
    if change_set.is_empty:
        return f"""I couldn't extract file changes from my response to this feedback:

{reply}

{SIGNATURE}"""
    return f"Addressed review feedback.\n\n{_summary_with_files(change_set)}\n\n{SIGNATURE}"


def review_comment_text(comment: Comment) -> str:
    """Prefix a PR review comment with the ``path:line`` it is anchored to."""
    if not comment.path:
        return comment.body
    location = f"{comment.path}:{comment.line}" if comment.line else comment.path
    return f"{location}\n{comment.body}"
