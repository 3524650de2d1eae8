"""Detect continuation markers inside JSONL transcripts.

A transcript is an append-only sequence of JSON records, one per line. Two
record shapes matter here:

* a ``file-history-snapshot`` record with a logical parent reference marks the
  transcript as the continuation (child) of an earlier session;
* a ``compact_boundary`` record (either ``type: compact_boundary`` or
  ``type: system`` + ``subtype: compact_boundary``) marks the point where this
  session was split; its text usually names the session that continues it.

Everything else in the transcript is ignored.
"""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from continuum.date_utils import to_epoch_ms
from continuum.models import BoundaryMarker, ScanResult

logger = logging.getLogger("continuum.scanner")

_UUID_PATTERN = re.compile(
    r"([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})", re.IGNORECASE
)
_SESSION_FILE_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
_SNAPSHOT_TYPE = "file-history-snapshot"
_BOUNDARY_TYPE = "compact_boundary"
_CHILD_REFERENCE_KEYS = ("logicalParentSessionId", "logicalParentUuid")

ProgressCallback = Callable[[int, int, Path], None]


def session_id_from_path(path: Path) -> str | None:
    """Return the UUID session id encoded in a ``<uuid>.jsonl`` file name."""
    if path.suffix.lower() != ".jsonl":
        return None
    stem = path.stem
    if _SESSION_FILE_PATTERN.match(stem):
        return stem.lower()
    return None


def is_session_file(path: Path) -> bool:
    return session_id_from_path(path) is not None


def extract_next_session_id(text: str | None) -> str | None:
    """Pull the first UUID out of a boundary message."""
    if not text:
        return None
    match = _UUID_PATTERN.search(text)
    return match.group(1).lower() if match else None


def iter_transcript_events(path: Path) -> Iterator[dict[str, Any]]:
    """Yield decoded records in file order, skipping blank and malformed lines.

    Raises ``OSError`` if the file cannot be opened.
    """
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for line_number, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed line %d in %s", line_number, path)
                continue
            if isinstance(record, dict):
                yield record


def _is_boundary(record: dict[str, Any]) -> bool:
    kind = record.get("type")
    if kind == _BOUNDARY_TYPE:
        return True
    return kind == "system" and record.get("subtype") == _BOUNDARY_TYPE


def _boundary_text(record: dict[str, Any]) -> str:
    content = record.get("content")
    if isinstance(content, str) and content:
        return content
    message = record.get("message")
    if isinstance(message, dict):
        inner = message.get("content")
        if isinstance(inner, str):
            return inner
        if isinstance(inner, list):
            parts = [
                str(block.get("text") or "")
                for block in inner
                if isinstance(block, dict) and block.get("type") == "text"
            ]
            return "\n".join(p for p in parts if p)
    elif isinstance(message, str):
        return message
    return ""


def _child_reference(record: dict[str, Any]) -> str | None:
    for key in _CHILD_REFERENCE_KEYS:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def scan_transcript(path: Path, session_id: str | None = None) -> ScanResult:
    """Scan one transcript for its child and parent markers.

    Never raises: an unreadable file produces the empty result with ``error``
    set, and malformed lines are skipped.
    """
    sid = (session_id or session_id_from_path(path) or "").lower()
    result = ScanResult(sessionId=sid)

    try:
        for record in iter_transcript_events(path):
            if not result.isChild and record.get("type") == _SNAPSHOT_TYPE:
                parent_ref = _child_reference(record)
                if parent_ref:
                    result.isChild = True
                    result.parentId = parent_ref.lower()
                    result.childStartedAt = to_epoch_ms(record.get("timestamp"))
                continue

            if not _is_boundary(record):
                continue

            # A boundary carrying another session's id was copied in from the
            # parent when this session was created.
            owner = str(record.get("sessionId") or "").strip().lower()
            if owner and sid and owner != sid:
                if not result.isChild:
                    result.isChild = True
                    result.parentId = owner
                    result.childStartedAt = to_epoch_ms(record.get("timestamp"))
                continue

            text = _boundary_text(record)
            result.isParent = True
            result.parentMarker = BoundaryMarker(
                timestamp=to_epoch_ms(record.get("timestamp")),
                nextSessionId=extract_next_session_id(text),
                message=text,
            )
            break
    except (OSError, UnicodeError) as exc:
        logger.warning("Unable to scan transcript %s: %s", path, exc)
        return ScanResult(sessionId=sid, error=str(exc) or exc.__class__.__name__)

    if result.isChild and result.parentId == sid:
        logger.warning("Transcript %s references itself as parent; ignoring child marker", path)
        result.isChild = False
        result.parentId = None
        result.childStartedAt = None

    return result


def scan_transcripts(
    paths: Iterable[Path],
    progress_callback: ProgressCallback | None = None,
) -> dict[str, ScanResult]:
    """Scan many transcripts; one corrupt file never aborts the batch."""
    path_list = list(paths)
    results: dict[str, ScanResult] = {}
    for index, path in enumerate(path_list, start=1):
        if progress_callback:
            progress_callback(index, len(path_list), path)
        sid = session_id_from_path(path)
        if not sid:
            logger.debug("Skipping non-session file %s", path)
            continue
        results[sid] = scan_transcript(path, sid)
    return results
