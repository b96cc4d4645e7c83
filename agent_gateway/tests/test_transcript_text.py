from datetime import datetime, timezone

from agent_gateway.domain.session import MessageRecord, Session
from agent_gateway.infrastructure.storage.transcript_text import export_transcript, import_transcript


def _record(i, role, content):
    return MessageRecord(
        id=f"m{i}",
        session_id="s1",
        role=role,
        content=content,
        model=None,
        token_count=None,
        created_at=datetime.now(timezone.utc),
        metadata={},
    )


def test_export_format():
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    session = Session(id="s1", name="Trip", created_at=now, updated_at=now, metadata={})
    text = export_transcript(session, [_record(1, "user", "hi")])
    assert text.splitlines() == [
        "Session: Trip",
        "ID: s1",
        "Created At: 2024-05-01T00:00:00+00:00",
        "---",
        "[USER]: hi",
        "---",
    ]


def test_round_trip_preserves_order_and_multiline_content():
    now = datetime.now(timezone.utc)
    session = Session(id="s1", name="Notes", created_at=now, updated_at=now, metadata={})
    pairs = [
        ("system", "You are helpful."),
        ("user", "line one\nline two"),
        ("assistant", "answer with [brackets]: ok"),
        ("tool", "raw tool output"),
    ]
    records = [_record(i, role, content) for i, (role, content) in enumerate(pairs)]

    name, imported = import_transcript(export_transcript(session, records))

    assert name == "Notes"
    assert imported == pairs


def test_import_without_header_uses_default_name():
    name, entries = import_transcript("[User]: Hello\n---\n")
    assert name == "Imported Session"
    assert entries == [("user", "Hello")]
