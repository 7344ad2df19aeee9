from __future__ import annotations

import json

from memindex.services import session_service
from memindex.services.session_service import SessionDeltaState


def _message(role: str, content) -> str:
    return json.dumps({"type": "message", "message": {"role": role, "content": content}})


def test_extract_session_text_handles_strings_and_blocks():
    assert session_service.extract_session_text("  hello\n\n  world ") == "hello world"
    assert (
        session_service.extract_session_text(
            [
                {"type": "text", "text": "first"},
                {"type": "image", "url": "x"},
                {"type": "text", "text": " second\nline "},
                "junk",
            ]
        )
        == "first second line"
    )
    assert session_service.extract_session_text("   ") is None
    assert session_service.extract_session_text({"text": "nope"}) is None


def test_build_session_entry_flattens_messages_with_line_map(tmp_path):
    transcript = tmp_path / "abc.jsonl"
    transcript.write_text(
        "\n".join(
            [
                json.dumps({"type": "session", "id": "abc"}),
                _message("user", "What is the deploy key policy?"),
                "not json",
                _message("tool", "ignored"),
                _message("assistant", [{"type": "text", "text": "It rotates every 90 days."}]),
                _message("assistant", ""),
                "",
            ]
        ),
        encoding="utf-8",
    )

    entry = session_service.build_session_entry(transcript)

    assert entry is not None
    assert entry.path == "sessions/abc.jsonl"
    assert entry.content == (
        "User: What is the deploy key policy?\nAssistant: It rotates every 90 days."
    )
    assert entry.line_map == [2, 5]
    assert entry.size == transcript.stat().st_size


def test_build_session_entry_missing_file_returns_none(tmp_path):
    assert session_service.build_session_entry(tmp_path / "gone.jsonl") is None


def test_list_session_files_only_returns_jsonl(tmp_path):
    (tmp_path / "b.jsonl").write_text("", encoding="utf-8")
    (tmp_path / "a.jsonl").write_text("", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("", encoding="utf-8")

    files = session_service.list_session_files(tmp_path)

    assert [path.name for path in files] == ["a.jsonl", "b.jsonl"]
    assert session_service.list_session_files(tmp_path / "missing") == []


def test_count_newlines_in_range(tmp_path):
    target = tmp_path / "s.jsonl"
    target.write_bytes(b"a\nb\nc\n")

    assert session_service.count_newlines(target, 0, 6) == 3
    assert session_service.count_newlines(target, 2, 4) == 1
    assert session_service.count_newlines(target, 4, 4) == 0


def test_byte_threshold_fires_exactly_at_limit(tmp_path):
    target = tmp_path / "s.jsonl"
    target.write_bytes(b"x" * 100)
    state = SessionDeltaState()

    below = session_service.update_session_delta(
        state, target, 99, delta_bytes=100, delta_messages=0
    )
    at_limit = session_service.update_session_delta(
        state, target, 100, delta_bytes=100, delta_messages=0
    )

    assert below is False
    assert at_limit is True
    assert state.pending_bytes == 100


def test_message_threshold_counts_newlines(tmp_path):
    target = tmp_path / "s.jsonl"
    target.write_bytes(b"{}\n" * 3)
    state = SessionDeltaState()

    hit = session_service.update_session_delta(
        state, target, 9, delta_bytes=1_000, delta_messages=3
    )

    assert hit is True
    assert state.pending_messages == 3


def test_message_threshold_below_limit(tmp_path):
    target = tmp_path / "s.jsonl"
    target.write_bytes(b"{}\n" * 2)
    state = SessionDeltaState()

    hit = session_service.update_session_delta(
        state, target, 6, delta_bytes=1_000, delta_messages=3
    )

    assert hit is False
    assert state.pending_messages == 2
    assert state.last_size == 6


def test_truncated_file_is_measured_from_zero(tmp_path):
    target = tmp_path / "s.jsonl"
    target.write_bytes(b"x" * 10)
    state = SessionDeltaState(last_size=50, pending_bytes=20)

    session_service.update_session_delta(state, target, 10, delta_bytes=100, delta_messages=0)

    assert state.last_size == 10
    assert state.pending_bytes == 30


def test_consume_and_reset_delta():
    state = SessionDeltaState(last_size=10, pending_bytes=150, pending_messages=60)

    session_service.consume_delta_thresholds(state, delta_bytes=100, delta_messages=50)
    assert (state.pending_bytes, state.pending_messages) == (50, 10)

    session_service.consume_delta_thresholds(state, delta_bytes=0, delta_messages=0)
    assert (state.pending_bytes, state.pending_messages) == (0, 0)

    session_service.reset_session_delta(state, 42)
    assert state == SessionDeltaState(last_size=42)
