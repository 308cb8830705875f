"""Extract file changes from assistant replies.

Two reply dialects are understood, tried in order:

1. Structured JSON: ``{"summary": "...", "files": [{"path": "...", "content": "..."}]}``
2. Fenced code blocks annotated with a file path, in three decreasing-confidence
   layouts (path on the fence line, ``File:`` label line, bare path line).

Parsing never raises. An empty ``ChangeSet`` means the reply could not be applied
and the workflow falls back to asking a human.
"""

from __future__ import annotations

import json
import re

import structlog

from issuesmith.models import ChangeSet

log = structlog.get_logger()

# ```lang path/to/file.ext   or   ```path/to/file.ext   (inner spaces allowed)
_FENCE_PATH_RE = re.compile(
    r"```[ \t]*(?:[\w+#-]+[ \t]+)?`?([\w./-](?:[\w./ -]*[\w./-])?)`?[ \t]*\n(.*?)```",
    re.DOTALL,
)
# File: path/to/file.ext  (or Path:) on the line before a fence
_LABELED_PATH_RE = re.compile(
    r"(?:File|Path)[ \t]*:[ \t]*\**[ \t]*`?([\w./-]+)`?\**[ \t]*\n\s*```[\w+#-]*[ \t]*\n(.*?)```",
    re.IGNORECASE | re.DOTALL,
)
# path/to/file.ext alone on the line before a fence
_BARE_PATH_RE = re.compile(
    r"^`?([\w./-]+)`?:?[ \t]*\n\s*```[\w+#-]*[ \t]*\n(.*?)```",
    re.MULTILINE | re.DOTALL,
)
_OUTER_JSON_FENCE_RE = re.compile(r"^```(?:json)?\s*\n(.*)\n\s*```$", re.DOTALL)


def parse_change_set(text: str) -> ChangeSet:
    change_set = _parse_json(text)
    if not change_set.is_empty:
        log.info("changeset_parsed", dialect="json", files=len(change_set.files))
        return change_set

    files = _parse_fenced(text)
    if files:
        log.info("changeset_parsed", dialect="fenced", files=len(files))
        return ChangeSet(files=files, summary=_fenced_summary(text, files))

    log.warning("changeset_empty", reply_len=len(text))
    return ChangeSet()


def _parse_json(text: str) -> ChangeSet:
    raw = text.strip()
    fenced = _OUTER_JSON_FENCE_RE.match(raw)
    if fenced:
        raw = fenced.group(1).strip()

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return ChangeSet()
    if not isinstance(data, dict):
        return ChangeSet()

    files: dict[str, str] = {}
    for entry in data.get("files") or []:
        if not isinstance(entry, dict):
            continue
        path = entry.get("path")
        content = entry.get("content")
        if isinstance(path, str) and isinstance(content, str) and path and content:
            files[path] = content

    if not files:
        return ChangeSet()

    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        summary = synthesize_summary(files)
    return ChangeSet(files=files, summary=summary.strip())


def _parse_fenced(text: str) -> dict[str, str]:
    files = _collect(_FENCE_PATH_RE, text, _has_dot_or_slash)
    if files:
        return files

    files = _collect(_LABELED_PATH_RE, text, lambda path: True)
    if files:
        return files

    return _collect(_BARE_PATH_RE, text, _has_dot_no_space)


def _collect(pattern: re.Pattern[str], text: str, accept) -> dict[str, str]:
    files: dict[str, str] = {}
    for match in pattern.finditer(text):
        path = match.group(1).strip()
        if not path or not accept(path):
            continue
        files[path] = match.group(2).rstrip("\n\r \t")
    return files


def _has_dot_or_slash(path: str) -> bool:
    return "." in path or "/" in path


def _has_dot_no_space(path: str) -> bool:
    return "." in path and " " not in path


def _fenced_summary(text: str, files: dict[str, str]) -> str:
    lines: list[str] = []
    for line in text.splitlines():
        if line.strip().startswith("```"):
            break
        if line.strip():
            lines.append(line.rstrip())
    summary = "\n".join(lines).strip()
    return summary or synthesize_summary(files)


def synthesize_summary(files: dict[str, str]) -> str:
    paths = list(files)
    if len(paths) == 1:
        return f"Updated `{paths[0]}`"
    listing = "\n".join(f"- `{path}`" for path in paths)
    return f"Updated {len(paths)} files:\n{listing}"
