"""Per-issue workflow state persisted via SQLite."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite
import structlog

from issuesmith.models import IssueRecord, Message, Status

log = structlog.get_logger()

_SCHEMA = """
CREATE TABLE IF NOT EXISTS issue_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner TEXT NOT NULL,
    repo TEXT NOT NULL,
    issue_number INTEGER NOT NULL,
    status TEXT NOT NULL,
    pr_number INTEGER,
    branch_name TEXT NOT NULL DEFAULT '',
    conversation TEXT NOT NULL DEFAULT '[]',
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    cost_usd REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    comments_seen_at TEXT,
    UNIQUE(owner, repo, issue_number)
);

CREATE INDEX IF NOT EXISTS idx_issue_records_lookup
ON issue_records(owner, repo, issue_number);
"""

_UPSERT = """
INSERT INTO issue_records
    (owner, repo, issue_number, status, pr_number, branch_name, conversation,
     input_tokens, output_tokens, cost_usd, created_at, updated_at, completed_at,
     comments_seen_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(owner, repo, issue_number) DO UPDATE SET
    status = excluded.status,
    pr_number = excluded.pr_number,
    branch_name = excluded.branch_name,
    conversation = excluded.conversation,
    input_tokens = excluded.input_tokens,
    output_tokens = excluded.output_tokens,
    cost_usd = excluded.cost_usd,
    updated_at = excluded.updated_at,
    completed_at = excluded.completed_at,
    comments_seen_at = excluded.comments_seen_at
"""


class StateStoreError(Exception):
    """Raised when a persisted record cannot be decoded."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StateStore:
    """One record per (owner, repo, issue_number); single writer assumed.

    Storage errors propagate to the caller.
    """

    def __init__(self, db_path: Path | str, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._db_path = Path(db_path)
        self._clock = clock

    async def init_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self._db_path) as db:
            await db.executescript(_SCHEMA)
            cursor = await db.execute("PRAGMA table_info(issue_records)")
            columns = {row[1] for row in await cursor.fetchall()}
            if "comments_seen_at" not in columns:
                await db.execute("ALTER TABLE issue_records ADD COLUMN comments_seen_at TEXT")
                log.info("state_migrated", column="comments_seen_at")
            await db.commit()

    async def get(self, owner: str, repo: str, issue_number: int) -> IssueRecord | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM issue_records WHERE owner = ? AND repo = ? AND issue_number = ?",
                (owner, repo, issue_number),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_record(row)

    async def save(self, record: IssueRecord) -> IssueRecord:
        now = self._clock()
        if record.created_at is None:
            record.created_at = now
        record.updated_at = now

        conversation = json.dumps([m.to_dict() for m in record.conversation])
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                _UPSERT,
                (
                    record.owner,
                    record.repo,
                    record.issue_number,
                    record.status.value,
                    record.pr_number,
                    record.branch_name,
                    conversation,
                    record.input_tokens,
                    record.output_tokens,
                    record.cost_usd,
                    _fmt(record.created_at),
                    _fmt(record.updated_at),
                    _fmt(record.completed_at),
                    _fmt(record.comments_seen_at),
                ),
            )
            if record.id is None:
                cursor = await db.execute(
                    "SELECT id FROM issue_records"
                    " WHERE owner = ? AND repo = ? AND issue_number = ?",
                    (record.owner, record.repo, record.issue_number),
                )
                row = await cursor.fetchone()
                record.id = row[0] if row else None
            await db.commit()

        log.debug("state_saved", issue=record.issue_ref, status=record.status.value)
        return record

    async def delete(self, owner: str, repo: str, issue_number: int) -> bool:
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "DELETE FROM issue_records WHERE owner = ? AND repo = ? AND issue_number = ?",
                (owner, repo, issue_number),
            )
            await db.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            log.info("state_deleted", issue=f"{owner}/{repo}#{issue_number}")
        return deleted

    async def list_all(self) -> list[IssueRecord]:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM issue_records ORDER BY created_at DESC, id DESC"
            )
            rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def close(self) -> None:
        pass


def _fmt(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _row_to_record(row: aiosqlite.Row) -> IssueRecord:
    ref = f"{row['owner']}/{row['repo']}#{row['issue_number']}"
    try:
        messages = [Message.from_dict(m) for m in json.loads(row["conversation"] or "[]")]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise StateStoreError(f"Corrupt conversation for {ref}: {e}") from e

    return IssueRecord(
        id=row["id"],
        owner=row["owner"],
        repo=row["repo"],
        issue_number=row["issue_number"],
        status=Status(row["status"]),
        pr_number=row["pr_number"],
        branch_name=row["branch_name"] or "",
        conversation=messages,
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        cost_usd=row["cost_usd"],
        created_at=_parse(row["created_at"]),
        updated_at=_parse(row["updated_at"]),
        completed_at=_parse(row["completed_at"]),
        comments_seen_at=_parse(row["comments_seen_at"]),
    )
