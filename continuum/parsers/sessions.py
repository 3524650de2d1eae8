"""Read lightweight session index records from JSONL transcripts."""
from __future__ import annotations

import logging
from pathlib import Path

from continuum.date_utils import epoch_ms_to_iso, to_epoch_ms
from continuum.models import SessionRecord
from continuum.parsers.transcripts import iter_transcript_events, session_id_from_path

logger = logging.getLogger("continuum.scanner")

_MESSAGE_TYPES = {"user", "assistant"}


def read_session_record(path: Path) -> SessionRecord | None:
    """Build the index entry for one transcript.

    Returns ``None`` for files that are not named like a session or that
    disappeared before they could be read.
    """
    session_id = session_id_from_path(path)
    if not session_id:
        return None

    try:
        stat = path.stat()
    except OSError as exc:
        logger.debug("Session file %s not readable: %s", path, exc)
        return None

    message_count = 0
    first_ms: int | None = None
    last_ms: int | None = None
    try:
        for record in iter_transcript_events(path):
            if record.get("type") not in _MESSAGE_TYPES:
                continue
            message_count += 1
            ts = to_epoch_ms(record.get("timestamp"))
            if ts is None:
                continue
            if first_ms is None or ts < first_ms:
                first_ms = ts
            if last_ms is None or ts > last_ms:
                last_ms = ts
    except OSError as exc:
        logger.warning("Failed to read session %s: %s", path, exc)
        return None

    return SessionRecord(
        sessionId=session_id,
        filePath=str(path),
        projectPath=path.parent.name,
        mtime=stat.st_mtime,
        fileSize=stat.st_size,
        messageCount=message_count,
        firstMessageAt=epoch_ms_to_iso(first_ms),
        lastMessageAt=epoch_ms_to_iso(last_ms),
    )
