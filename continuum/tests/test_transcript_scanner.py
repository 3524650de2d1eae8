import json
import tempfile
import unittest
from pathlib import Path

from continuum.parsers.sessions import read_session_record
from continuum.parsers.transcripts import (
    extract_next_session_id,
    is_session_file,
    scan_transcript,
    scan_transcripts,
    session_id_from_path,
)

PARENT = "11111111-1111-4111-8111-111111111111"
CHILD = "22222222-2222-4222-8222-222222222222"
OTHER = "33333333-3333-4333-8333-333333333333"


def _write(path: Path, records: list) -> Path:
    lines = []
    for record in records:
        lines.append(record if isinstance(record, str) else json.dumps(record))
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


class TranscriptScannerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name) / "-Users-dev-project"
        self.root.mkdir()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_session_id_from_path_requires_uuid_jsonl(self) -> None:
        self.assertEqual(session_id_from_path(Path(f"/x/{PARENT.upper()}.jsonl")), PARENT)
        self.assertIsNone(session_id_from_path(Path("/x/notes.jsonl")))
        self.assertIsNone(session_id_from_path(Path(f"/x/{PARENT}.json")))
        self.assertTrue(is_session_file(Path(f"/x/{CHILD}.jsonl")))

    def test_extract_next_session_id_reads_first_uuid(self) -> None:
        text = f"Conversation continues in {CHILD.upper()} (see also {OTHER})"
        self.assertEqual(extract_next_session_id(text), CHILD)
        self.assertIsNone(extract_next_session_id("no id here"))
        self.assertIsNone(extract_next_session_id(None))

    def test_child_marker_from_file_history_snapshot(self) -> None:
        path = _write(self.root / f"{CHILD}.jsonl", [
            {"type": "file-history-snapshot", "logicalParentSessionId": PARENT, "timestamp": "2026-02-16T10:00:00Z"},
            {"type": "user", "sessionId": CHILD, "timestamp": "2026-02-16T10:00:01Z"},
        ])

        result = scan_transcript(path)

        self.assertEqual(result.sessionId, CHILD)
        self.assertTrue(result.isChild)
        self.assertEqual(result.parentId, PARENT)
        self.assertEqual(result.childStartedAt, 1771236000000)
        self.assertFalse(result.isParent)
        self.assertIsNone(result.error)

    def test_parent_marker_from_compact_boundary(self) -> None:
        path = _write(self.root / f"{PARENT}.jsonl", [
            {"type": "user", "sessionId": PARENT, "timestamp": "2026-02-16T09:00:00Z"},
            {
                "type": "system",
                "subtype": "compact_boundary",
                "sessionId": PARENT,
                "content": f"Context limit reached, continued in {CHILD}",
                "timestamp": "2026-02-16T09:59:00Z",
            },
        ])

        result = scan_transcript(path)

        self.assertFalse(result.isChild)
        self.assertTrue(result.isParent)
        assert result.parentMarker is not None
        self.assertEqual(result.parentMarker.nextSessionId, CHILD)
        self.assertIn("Context limit reached", result.parentMarker.message)

    def test_markers_are_independent(self) -> None:
        path = _write(self.root / f"{CHILD}.jsonl", [
            {"type": "file-history-snapshot", "logicalParentSessionId": PARENT, "timestamp": "2026-02-16T10:00:00Z"},
            {"type": "compact_boundary", "sessionId": CHILD, "message": {"content": [{"type": "text", "text": f"next {OTHER}"}]}},
        ])

        result = scan_transcript(path)

        self.assertTrue(result.isChild)
        self.assertTrue(result.isParent)
        assert result.parentMarker is not None
        self.assertEqual(result.parentMarker.nextSessionId, OTHER)

    def test_copied_boundary_from_parent_counts_as_child_marker(self) -> None:
        path = _write(self.root / f"{CHILD}.jsonl", [
            {"type": "compact_boundary", "sessionId": PARENT, "content": "copied", "timestamp": "2026-02-16T10:00:00Z"},
            {"type": "user", "sessionId": CHILD},
        ])

        result = scan_transcript(path)

        self.assertTrue(result.isChild)
        self.assertEqual(result.parentId, PARENT)
        self.assertFalse(result.isParent)

    def test_malformed_lines_are_skipped(self) -> None:
        path = _write(self.root / f"{CHILD}.jsonl", [
            "{not json",
            "",
            "[1, 2, 3]",
            {"type": "file-history-snapshot", "logicalParentUuid": PARENT},
        ])

        result = scan_transcript(path)

        self.assertTrue(result.isChild)
        self.assertEqual(result.parentId, PARENT)
        self.assertIsNone(result.childStartedAt)

    def test_self_reference_is_ignored(self) -> None:
        path = _write(self.root / f"{CHILD}.jsonl", [
            {"type": "file-history-snapshot", "logicalParentSessionId": CHILD},
        ])

        result = scan_transcript(path)

        self.assertFalse(result.isChild)
        self.assertIsNone(result.parentId)

    def test_missing_file_reports_error_instead_of_raising(self) -> None:
        result = scan_transcript(self.root / f"{OTHER}.jsonl")

        self.assertEqual(result.sessionId, OTHER)
        self.assertIsNotNone(result.error)
        self.assertFalse(result.isChild)
        self.assertFalse(result.isParent)

    def test_scan_transcripts_reports_progress_and_skips_non_session_files(self) -> None:
        first = _write(self.root / f"{PARENT}.jsonl", [{"type": "user"}])
        second = _write(self.root / f"{CHILD}.jsonl", [{"type": "file-history-snapshot", "logicalParentSessionId": PARENT}])
        stray = _write(self.root / "index.jsonl", [{"type": "user"}])
        seen: list[tuple[int, int]] = []

        results = scan_transcripts([first, stray, second], lambda i, total, _path: seen.append((i, total)))

        self.assertEqual(set(results), {PARENT, CHILD})
        self.assertEqual(seen, [(1, 3), (2, 3), (3, 3)])
        self.assertTrue(results[CHILD].isChild)


class SessionRecordReaderTests(unittest.TestCase):
    def test_reads_message_counts_and_bounds(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            project = Path(tmp) / "-Users-dev-project"
            project.mkdir()
            path = _write(project / f"{PARENT}.jsonl", [
                {"type": "summary"},
                {"type": "user", "timestamp": "2026-02-16T10:00:05Z"},
                {"type": "assistant", "timestamp": "2026-02-16T10:00:01Z"},
                {"type": "assistant"},
            ])

            record = read_session_record(path)

        assert record is not None
        self.assertEqual(record.sessionId, PARENT)
        self.assertEqual(record.projectPath, "-Users-dev-project")
        self.assertEqual(record.messageCount, 3)
        self.assertEqual(record.firstMessageAt, "2026-02-16T10:00:01.000Z")
        self.assertEqual(record.lastMessageAt, "2026-02-16T10:00:05.000Z")
        self.assertGreater(record.fileSize, 0)

    def test_non_session_or_missing_files_return_none(self) -> None:
        self.assertIsNone(read_session_record(Path("/nonexistent/readme.jsonl")))
        self.assertIsNone(read_session_record(Path(f"/nonexistent/{PARENT}.jsonl")))


if __name__ == "__main__":
    unittest.main()
