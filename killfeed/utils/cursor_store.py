"""
Cursor Store
Tracks how far each remote log file has been consumed, per guild, server and file
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from killfeed.utils.exceptions import PersistenceException, RotationDetected

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Cursor:
    """Consumed position in one remote file"""
    guild_id: int
    server_id: str
    file_id: str
    offset: int = 0
    line_count: int = 0
    fingerprint: Optional[str] = None
    last_advanced: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            "guild_id": self.guild_id,
            "server_id": self.server_id,
            "file_id": self.file_id,
            "offset": self.offset,
            "line_count": self.line_count,
            "fingerprint": self.fingerprint,
            "last_advanced": self.last_advanced,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Cursor":
        return cls(
            guild_id=doc["guild_id"],
            server_id=doc["server_id"],
            file_id=doc["file_id"],
            offset=doc.get("offset", 0),
            line_count=doc.get("line_count", 0),
            fingerprint=doc.get("fingerprint"),
            last_advanced=doc.get("last_advanced"),
        )


def fingerprint_bytes(data: bytes) -> Optional[str]:
    if not data:
        return None
    return hashlib.sha1(data).hexdigest()


class CursorStore:
    """Reads and advances cursors through the repository"""

    def __init__(self, db_manager, fingerprint_window: int = 256, retry_delay: float = 0.1):
        self.db_manager = db_manager
        self.fingerprint_window = fingerprint_window
        self.retry_delay = retry_delay

    async def get_cursor(self, guild_id: int, server_id: str, file_id: str) -> Optional[Cursor]:
        doc = await self.db_manager.get_cursor(guild_id, server_id, file_id)
        if not doc:
            return None
        return Cursor.from_document(doc)

    async def load(self, guild_id: int, server_id: str, file_id: str) -> Cursor:
        """Existing cursor, or a fresh one at offset 0 for a never-seen file"""
        cursor = await self.get_cursor(guild_id, server_id, file_id)
        if cursor is None:
            logger.debug(f"New cursor for {file_id} on server {server_id}")
            return Cursor(guild_id=guild_id, server_id=server_id, file_id=file_id)
        return cursor

    def tail_range(self, cursor: Cursor) -> Optional[tuple]:
        """Byte range [start, end) whose hash is stored as the cursor fingerprint"""
        if cursor.offset <= 0:
            return None
        start = max(0, cursor.offset - self.fingerprint_window)
        return start, cursor.offset

    def fingerprint(self, consumed_tail: bytes) -> Optional[str]:
        return fingerprint_bytes(consumed_tail[-self.fingerprint_window:])

    def verify(self, cursor: Cursor, current_size: int) -> None:
        if current_size < cursor.offset:
            raise RotationDetected(cursor.file_id, cursor.offset, current_size)

    def check_rotation(self, cursor: Cursor, current_size: int, tail: Optional[bytes] = None) -> Cursor:
        """Reset the cursor when the file shrank below it; otherwise keep it.

        A fingerprint mismatch on a file that is still at least as large as the
        cursor is logged and the stored offset is trusted.
        """
        try:
            self.verify(cursor, current_size)
        except RotationDetected as e:
            logger.warning(f"🔄 {e} - re-reading from the start")
            return replace(cursor, offset=0, line_count=0, fingerprint=None)

        if tail is not None and cursor.fingerprint and self.fingerprint(tail) != cursor.fingerprint:
            logger.warning(
                f"Fingerprint mismatch on {cursor.file_id} (server {cursor.server_id}) at offset "
                f"{cursor.offset}; size {current_size} is consistent, keeping offset"
            )
        return cursor

    async def advance(self, cursor: Cursor, new_offset: int, new_fingerprint: Optional[str],
                      lines_consumed: int = 0) -> Cursor:
        """Persist a new offset, retrying once before surfacing the failure"""
        if new_offset < cursor.offset:
            raise ValueError(f"Cursor for {cursor.file_id} cannot move backwards ({cursor.offset} -> {new_offset})")

        advanced = replace(
            cursor,
            offset=new_offset,
            line_count=cursor.line_count + lines_consumed,
            fingerprint=new_fingerprint if new_fingerprint is not None else cursor.fingerprint,
            last_advanced=datetime.now(timezone.utc),
        )

        for attempt in (1, 2):
            try:
                await self.db_manager.save_cursor(advanced.to_document())
                logger.debug(f"Cursor {cursor.file_id}: {cursor.offset} -> {new_offset}")
                return advanced
            except PersistenceException as e:
                if attempt == 2:
                    raise
                logger.warning(f"Cursor save failed for {cursor.file_id}, retrying once: {e}")
                await asyncio.sleep(self.retry_delay)

        return advanced

    async def reset(self, guild_id: int, server_id: str, file_id: Optional[str] = None,
                    prefix: Optional[str] = None) -> int:
        """Forget cursors so the next poll re-reads from the start"""
        deleted = await self.db_manager.delete_cursors(guild_id, server_id, file_id, prefix)
        logger.info(f"Reset {deleted} cursor(s) for server {server_id} in guild {guild_id}")
        return deleted
