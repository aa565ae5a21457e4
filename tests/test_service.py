import pytest

from agentmail.errors import InvalidStatusError, RecipientNotFoundError, SessionUnavailableError
from agentmail.models import RecipientStatus
from agentmail.service import AgentMail, RecipientListing, load_ignore_list
from agentmail.windows import StaticWindows


@pytest.fixture
def service(layout, windows, mailbox, registry):
    return AgentMail(layout, windows, mailbox=mailbox, registry=registry)


def _as(service: AgentMail, name: str) -> AgentMail:
    service.windows.current = name
    return service


def test_send_then_receive_round_trip(service, registry):
    message_id = _as(service, "alice").send("bob", "hello bob")

    message = _as(service, "bob").receive()
    assert message.id == message_id
    assert (message.sender, message.body, message.read) == ("alice", "hello bob", True)
    assert registry.get("bob").last_read_at is not None
    assert service.receive() is None


@pytest.mark.parametrize("target", ["alice", "zed"])
def test_send_rejects_self_and_inactive_targets(service, target):
    with pytest.raises(RecipientNotFoundError) as excinfo:
        service.send(target, "x")
    assert str(excinfo.value) == "recipient not found"


def test_ignored_recipients_are_hidden_and_unreachable(service, layout):
    layout.ignore_path.write_text("carol\n\n  alice  \n", encoding="utf-8")

    with pytest.raises(RecipientNotFoundError):
        service.send("carol", "x")
    assert service.list_recipients() == [
        RecipientListing(name="alice", is_self=True),
        RecipientListing(name="bob"),
    ]


def test_missing_ignore_file_ignores_nothing(tmp_path):
    assert load_ignore_list(tmp_path / ".agentmailignore") == set()


def test_set_status_outside_session_is_a_no_op(layout, mailbox, registry):
    service = AgentMail(layout, StaticWindows(session_available=False), mailbox=mailbox, registry=registry)
    assert service.set_status("busy") is None
    assert not registry.path.exists()


def test_set_status_validates_inside_session(service, registry):
    with pytest.raises(InvalidStatusError):
        service.set_status("busy")
    assert service.set_status("work").status is RecipientStatus.WORK
    assert registry.get("alice").status is RecipientStatus.WORK


def test_send_outside_session_raises(layout, mailbox, registry):
    service = AgentMail(layout, StaticWindows(session_available=False), mailbox=mailbox, registry=registry)
    with pytest.raises(SessionUnavailableError):
        service.send("bob", "x")


def test_cleanup_uses_configured_defaults(service, mailbox):
    mailbox.append("bob", "alice", "x")
    result = service.cleanup()
    assert result.messages_removed == 0
    assert not result.dry_run
