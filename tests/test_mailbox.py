import json
import multiprocessing
from datetime import timedelta
from pathlib import Path

import pytest

from agentmail.errors import AgentMailError, InvalidRecipientError, MessageIdExhaustedError
from agentmail.layout import StateLayout
from agentmail.locking import exclusive_lock
from agentmail.mailbox import MailboxStore


def _append_many(root: str, sender: str, count: int) -> None:
    store = MailboxStore(StateLayout(Path(root)))
    for index in range(count):
        store.append("shared", sender, f"{sender}-{index}")


def _claim_all(root: str, queue) -> None:
    store = MailboxStore(StateLayout(Path(root)))
    claimed = []
    while True:
        message = store.claim_oldest_unread("shared")
        if message is None:
            break
        claimed.append(message.id)
    queue.put(claimed)


def test_claims_follow_append_order(mailbox):
    for body in ("A", "B", "C"):
        mailbox.append("agent-d", "alice", body)

    first = mailbox.claim_oldest_unread("agent-d")
    second = mailbox.claim_oldest_unread("agent-d")

    assert (first.body, second.body) == ("A", "B")
    assert first.read and second.read
    remaining = mailbox.read_all("agent-d")
    assert [(m.body, m.read) for m in remaining] == [("A", True), ("B", True), ("C", False)]
    assert [m.body for m in mailbox.find_unread("agent-d")] == ["C"]


def test_claim_is_idempotent_once_everything_is_read(mailbox, layout):
    mailbox.append("bob", "alice", "only")
    assert mailbox.claim_oldest_unread("bob").body == "only"
    before = layout.mailbox_path("bob").read_bytes()

    assert mailbox.claim_oldest_unread("bob") is None
    assert mailbox.claim_oldest_unread("bob") is None
    assert layout.mailbox_path("bob").read_bytes() == before


def test_claim_on_missing_mailbox_returns_none(mailbox, layout):
    assert mailbox.claim_oldest_unread("nobody") is None
    assert not layout.mailbox_path("nobody").exists()


def test_append_records_sender_recipient_and_timestamp(mailbox, layout, clock):
    message_id = mailbox.append("bob", "alice", "hello")
    line = layout.mailbox_path("bob").read_text(encoding="utf-8").strip()
    payload = json.loads(line)
    assert payload["id"] == message_id
    assert payload["from"] == "alice"
    assert payload["to"] == "bob"
    assert payload["message"] == "hello"
    assert payload["read_flag"] is False
    assert payload["created_at"] == clock.now.isoformat()


def test_append_regenerates_colliding_ids(mailbox, monkeypatch):
    issued = iter(["dupe0001", "dupe0001", "fresh002"])
    monkeypatch.setattr("agentmail.mailbox.generate_id", lambda length: next(issued))
    assert mailbox.append("bob", "alice", "one") == "dupe0001"
    assert mailbox.append("bob", "alice", "two") == "fresh002"


def test_append_gives_up_after_repeated_collisions(mailbox, monkeypatch):
    monkeypatch.setattr("agentmail.mailbox.generate_id", lambda length: "dupe0001")
    mailbox.append("bob", "alice", "one")
    with pytest.raises(MessageIdExhaustedError) as excinfo:
        mailbox.append("bob", "alice", "two")
    assert isinstance(excinfo.value, AgentMailError)
    assert len(mailbox.read_all("bob")) == 1


def test_list_recipients_only_reports_mailbox_logs(mailbox, layout):
    mailbox.append("bob", "alice", "x")
    mailbox.append("carol", "alice", "y")
    (layout.mailbox_dir / ".carol.jsonl.123.tmp").write_text("", encoding="utf-8")
    (layout.mailbox_dir / "notes.txt").write_text("", encoding="utf-8")
    assert mailbox.list_recipients() == ["bob", "carol"]


def test_list_recipients_leaves_out_invalid_file_names(mailbox, layout):
    mailbox.append("bob", "alice", "x")
    (layout.mailbox_dir / "a\\b.jsonl").write_text("", encoding="utf-8")
    assert mailbox.list_recipients() == ["bob"]


@pytest.mark.parametrize("name", ["", "../escape", "a/b", "..", "x\\y"])
def test_recipient_names_cannot_escape_the_mailbox_directory(mailbox, name):
    with pytest.raises(InvalidRecipientError):
        mailbox.append(name, "alice", "x")


def _write_mailbox(layout, recipient, entries):
    lines = [
        json.dumps(
            {
                "id": f"id{index:06d}",
                "from": "alice",
                "to": recipient,
                "message": body,
                "read_flag": read,
                "created_at": created.isoformat(),
            }
        )
        for index, (body, read, created) in enumerate(entries)
    ]
    layout.mailbox_path(recipient).write_text("\n".join(lines) + "\n", encoding="utf-8")


def test_prune_delivered_keeps_unread_and_recent_messages(mailbox, layout, clock):
    now = clock.now
    _write_mailbox(
        layout,
        "agent-c",
        [
            ("msg1", True, now - timedelta(hours=3)),
            ("msg2", False, now - timedelta(hours=5)),
            ("msg3", True, now - timedelta(minutes=30)),
        ],
    )

    dry = mailbox.prune_delivered("agent-c", timedelta(hours=2), dry_run=True)
    assert (dry.removed, dry.remaining, dry.skipped) == (1, 2, False)
    assert len(mailbox.read_all("agent-c")) == 3

    outcome = mailbox.prune_delivered("agent-c", timedelta(hours=2))
    assert outcome.removed == 1
    assert [m.body for m in mailbox.read_all("agent-c")] == ["msg2", "msg3"]


def test_prune_skips_a_locked_mailbox(mailbox, layout):
    mailbox.append("bob", "alice", "x")
    with exclusive_lock(layout.mailbox_lock_path("bob")):
        outcome = mailbox.prune_delivered("bob", timedelta(0), lock_timeout=0.05)
        deleted = mailbox.delete_if_empty("bob", lock_timeout=0.05)
    assert outcome.skipped
    assert deleted.skipped
    assert layout.mailbox_path("bob").exists()


def test_delete_if_empty_counts_malformed_lines_as_entries(mailbox, layout):
    path = layout.mailbox_path("bob")
    path.write_text("garbage\n", encoding="utf-8")
    assert mailbox.delete_if_empty("bob").removed == 0
    assert path.exists()

    path.write_text("", encoding="utf-8")
    assert mailbox.delete_if_empty("bob").removed == 1
    assert not path.exists()


def test_delete_if_empty_dry_run_uses_pending_removals(mailbox, layout):
    mailbox.append("bob", "alice", "x")
    assert mailbox.delete_if_empty("bob", dry_run=True).removed == 0
    assert mailbox.delete_if_empty("bob", dry_run=True, pending_removals=1).removed == 1
    assert layout.mailbox_path("bob").exists()


def test_concurrent_appenders_and_claimer_lose_nothing(layout):
    root = str(layout.root)
    ctx = multiprocessing.get_context("fork")
    writers = [ctx.Process(target=_append_many, args=(root, name, 25)) for name in ("w1", "w2", "w3")]
    for proc in writers:
        proc.start()
    for proc in writers:
        proc.join(timeout=60)
        assert proc.exitcode == 0

    queue = ctx.Queue()
    claimer = ctx.Process(target=_claim_all, args=(root, queue))
    claimer.start()
    claimed = queue.get(timeout=60)
    claimer.join(timeout=60)

    store = MailboxStore(layout)
    messages = store.read_all("shared")
    assert len(messages) == 75
    assert len({m.id for m in messages}) == 75
    assert claimed == [m.id for m in messages]
    assert all(m.read for m in messages)
    for sender in ("w1", "w2", "w3"):
        bodies = [m.body for m in messages if m.sender == sender]
        assert bodies == [f"{sender}-{index}" for index in range(25)]
