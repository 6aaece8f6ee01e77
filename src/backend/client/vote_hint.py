"""
Local "already voted" hints.

A hint is a convenience for the UI: it lets a client skip the round trip to
ask whether the device has voted. It is never authoritative, the server
decides. Hints are written to several independent stores so that clearing
one of them does not lose the record.

Reads succeed on any hit. Writes fan out best-effort: a failing store is
logged and skipped.
"""

import json
import time
from http.cookiejar import Cookie
from pathlib import Path
from typing import Optional, Protocol

import aiosqlite
import httpx
import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

HINT_KEY = "voted_polls"
COOKIE_MAX_AGE_SECONDS = 365 * 24 * 60 * 60
COOKIE_FINGERPRINT_CHARS = 16
DEFAULT_RETENTION_DAYS = 365


def _now_ms() -> int:
    return int(time.time() * 1000)


class VoteHintRecord(BaseModel):
    poll_id: str = Field(..., alias="pollId")
    timestamp: int = Field(default_factory=_now_ms, description="Unix epoch milliseconds")
    fingerprint: str = ""
    option_ids: list[str] = Field(default_factory=list, alias="optionIds")

    model_config = {"populate_by_name": True}


class VoteHintStore(Protocol):
    """One local storage channel."""

    name: str

    async def put(self, record: VoteHintRecord) -> None: ...
    async def contains(self, poll_id: str) -> bool: ...
    async def remove(self, poll_id: str) -> None: ...


# =============================================================================
# Stores
# =============================================================================


class MemoryHintStore:
    """Hints that live as long as the process, like browser session storage."""

    name = "memory"

    def __init__(self):
        self._records: dict[str, VoteHintRecord] = {}

    async def put(self, record: VoteHintRecord) -> None:
        self._records[record.poll_id] = record

    async def contains(self, poll_id: str) -> bool:
        return poll_id in self._records

    async def remove(self, poll_id: str) -> None:
        self._records.pop(poll_id, None)


class JsonFileHintStore:
    """
    Key-value hints in a JSON file.

    The file holds one object under ``voted_polls`` mapping poll ids to
    records. A missing or corrupt file reads as empty.
    """

    name = "json_file"

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def _load(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("vote_hint_file_unreadable", path=str(self.path), error=str(e))
            return {}
        polls = data.get(HINT_KEY) if isinstance(data, dict) else None
        return polls if isinstance(polls, dict) else {}

    def _save(self, polls: dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({HINT_KEY: polls}), encoding="utf-8")

    async def put(self, record: VoteHintRecord) -> None:
        polls = self._load()
        polls[record.poll_id] = record.model_dump(by_alias=True)
        self._save(polls)

    async def contains(self, poll_id: str) -> bool:
        return poll_id in self._load()

    async def remove(self, poll_id: str) -> None:
        polls = self._load()
        if polls.pop(poll_id, None) is not None:
            self._save(polls)


class CookieHintStore:
    """
    Hints in a cookie on an httpx cookie jar.

    The cookie value is a JSON object ``{pollId: {"t": ms, "f": fp[:16]}}``
    and expires a year after the last write.
    """

    name = "cookie"

    def __init__(self, cookies: httpx.Cookies, domain: str = "", path: str = "/"):
        self.cookies = cookies
        self.domain = domain
        self.path = path

    def _load(self) -> dict[str, dict]:
        for cookie in self.cookies.jar:
            if cookie.name == HINT_KEY and cookie.value:
                try:
                    polls = json.loads(cookie.value)
                except ValueError:
                    return {}
                return polls if isinstance(polls, dict) else {}
        return {}

    def _save(self, polls: dict[str, dict]) -> None:
        value = json.dumps(polls, separators=(",", ":"))
        self.cookies.jar.set_cookie(
            Cookie(
                version=0,
                name=HINT_KEY,
                value=value,
                port=None,
                port_specified=False,
                domain=self.domain,
                domain_specified=bool(self.domain),
                domain_initial_dot=self.domain.startswith("."),
                path=self.path,
                path_specified=True,
                secure=False,
                expires=int(time.time()) + COOKIE_MAX_AGE_SECONDS,
                discard=False,
                comment=None,
                comment_url=None,
                rest={"SameSite": "Strict"},
            )
        )

    async def put(self, record: VoteHintRecord) -> None:
        polls = self._load()
        polls[record.poll_id] = {
            "t": record.timestamp,
            "f": record.fingerprint[:COOKIE_FINGERPRINT_CHARS],
        }
        self._save(polls)

    async def contains(self, poll_id: str) -> bool:
        return poll_id in self._load()

    async def remove(self, poll_id: str) -> None:
        polls = self._load()
        if polls.pop(poll_id, None) is not None:
            self._save(polls)


class SqliteHintStore:
    """Structured hints in a local SQLite database, keyed by poll id."""

    name = "sqlite"

    def __init__(self, path: Path | str):
        self.path = str(path)
        self._ready = False

    async def _connect(self) -> aiosqlite.Connection:
        db = await aiosqlite.connect(self.path)
        if not self._ready:
            await db.execute(
                "CREATE TABLE IF NOT EXISTS votes ("
                " poll_id TEXT PRIMARY KEY,"
                " timestamp INTEGER NOT NULL,"
                " fingerprint TEXT NOT NULL,"
                " option_ids TEXT NOT NULL)"
            )
            await db.execute("CREATE INDEX IF NOT EXISTS ix_votes_timestamp ON votes (timestamp)")
            await db.commit()
            self._ready = True
        return db

    async def put(self, record: VoteHintRecord) -> None:
        db = await self._connect()
        try:
            await db.execute(
                "INSERT OR REPLACE INTO votes (poll_id, timestamp, fingerprint, option_ids)"
                " VALUES (?, ?, ?, ?)",
                (record.poll_id, record.timestamp, record.fingerprint, json.dumps(record.option_ids)),
            )
            await db.commit()
        finally:
            await db.close()

    async def contains(self, poll_id: str) -> bool:
        db = await self._connect()
        try:
            async with db.execute("SELECT 1 FROM votes WHERE poll_id = ?", (poll_id,)) as cursor:
                return await cursor.fetchone() is not None
        finally:
            await db.close()

    async def remove(self, poll_id: str) -> None:
        db = await self._connect()
        try:
            await db.execute("DELETE FROM votes WHERE poll_id = ?", (poll_id,))
            await db.commit()
        finally:
            await db.close()

    async def all_records(self) -> list[VoteHintRecord]:
        db = await self._connect()
        try:
            async with db.execute(
                "SELECT poll_id, timestamp, fingerprint, option_ids FROM votes ORDER BY timestamp"
            ) as cursor:
                rows = await cursor.fetchall()
        finally:
            await db.close()
        return [
            VoteHintRecord(
                poll_id=poll_id,
                timestamp=timestamp,
                fingerprint=fingerprint,
                option_ids=json.loads(option_ids),
            )
            for poll_id, timestamp, fingerprint, option_ids in rows
        ]

    async def cleanup_older_than(self, max_age_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete hints recorded more than ``max_age_days`` ago. Returns the count."""
        cutoff = _now_ms() - max_age_days * 24 * 60 * 60 * 1000
        db = await self._connect()
        try:
            cursor = await db.execute("DELETE FROM votes WHERE timestamp < ?", (cutoff,))
            await db.commit()
            return cursor.rowcount or 0
        finally:
            await db.close()


# =============================================================================
# Fan-out
# =============================================================================


class LocalVoteHint:
    """Redundant local record of which polls this device has voted on."""

    def __init__(self, stores: list[VoteHintStore]):
        self.stores = stores

    async def record_vote(
        self,
        poll_id: str,
        fingerprint: str,
        option_ids: Optional[list[str]] = None,
    ) -> int:
        """Write the hint to every store. Returns how many stores accepted it."""
        record = VoteHintRecord(poll_id=poll_id, fingerprint=fingerprint, option_ids=option_ids or [])
        written = 0
        for store in self.stores:
            try:
                await store.put(record)
                written += 1
            except Exception as e:
                logger.warning("vote_hint_write_failed", store=store.name, poll_id=poll_id, error=str(e))
        return written

    async def has_voted(self, poll_id: str) -> bool:
        """True if any store remembers a vote. Unreadable stores count as a miss."""
        for store in self.stores:
            try:
                if await store.contains(poll_id):
                    return True
            except Exception as e:
                logger.warning("vote_hint_read_failed", store=store.name, poll_id=poll_id, error=str(e))
        return False

    async def clear_vote(self, poll_id: str) -> None:
        for store in self.stores:
            try:
                await store.remove(poll_id)
            except Exception as e:
                logger.warning("vote_hint_clear_failed", store=store.name, poll_id=poll_id, error=str(e))

    async def cleanup_old_votes(self, max_age_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Expire old hints in stores that keep timestamps."""
        removed = 0
        for store in self.stores:
            cleanup = getattr(store, "cleanup_older_than", None)
            if cleanup is None:
                continue
            try:
                removed += await cleanup(max_age_days)
            except Exception as e:
                logger.warning("vote_hint_cleanup_failed", store=store.name, error=str(e))
        return removed
