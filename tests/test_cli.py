import pytest
from typer.testing import CliRunner

from agentmail.cli import app
from agentmail.daemon import LeaseFile
from agentmail.layout import StateLayout
from agentmail.windows import StaticWindows

DEAD_PID = 2**22 + 12345


@pytest.fixture
def session(isolated_env, monkeypatch):
    windows = StaticWindows.of(["alice", "bob", "carol"], current="alice")
    monkeypatch.setattr("agentmail.cli.build_windows", lambda: windows)
    return windows


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def test_send_and_receive(session, runner):
    sent = runner.invoke(app, ["send", "bob", "hello there"])
    assert sent.exit_code == 0
    assert sent.stdout.startswith("Message #")

    session.current = "bob"
    received = runner.invoke(app, ["receive"])
    assert received.exit_code == 0
    assert received.stdout.startswith("From: alice\nID: ")
    assert received.stdout.endswith("\n\nhello there\n")

    empty = runner.invoke(app, ["receive"])
    assert empty.stdout == "No unread messages\n"


def test_send_reads_message_from_stdin(session, runner):
    result = runner.invoke(app, ["send", "bob"], input="piped body")
    assert result.exit_code == 0
    session.current = "bob"
    assert runner.invoke(app, ["receive"]).stdout.endswith("piped body\n")


def test_send_to_unknown_recipient(session, runner):
    result = runner.invoke(app, ["send", "zed", "x"])
    assert result.exit_code == 1
    assert "recipient not found" in result.stderr


def test_commands_outside_tmux_exit_2(session, runner):
    session.session_available = False
    assert runner.invoke(app, ["send", "bob", "x"]).exit_code == 2
    assert runner.invoke(app, ["receive"]).exit_code == 2
    assert runner.invoke(app, ["recipients"]).exit_code == 2
    assert runner.invoke(app, ["status", "work"]).exit_code == 0


def test_receive_hook_mode(session, runner):
    runner.invoke(app, ["send", "bob", "for the hook"])
    session.current = "bob"

    result = runner.invoke(app, ["receive", "--hook"])
    assert result.exit_code == 2
    assert result.stdout == ""
    assert "for the hook" in result.stderr

    quiet = runner.invoke(app, ["receive", "--hook"])
    assert quiet.exit_code == 0
    assert quiet.stdout == "" and quiet.stderr == ""


def test_status_rejects_invalid_value(session, runner):
    result = runner.invoke(app, ["status", "busy"])
    assert result.exit_code == 1
    assert "Invalid status: busy. Valid: ready, work, offline" in result.stderr


def test_recipients_marks_caller_and_hides_ignored(session, runner, isolated_env):
    (isolated_env / ".agentmailignore").write_text("carol\n", encoding="utf-8")
    result = runner.invoke(app, ["recipients"])
    assert result.exit_code == 0
    assert result.stdout.splitlines() == ["alice [you]", "bob"]


def test_onboard_lists_other_agents(session, runner):
    result = runner.invoke(app, ["onboard"])
    assert result.exit_code == 0
    assert "You are **alice**." in result.stdout
    assert "Other agents: bob, carol" in result.stdout


def test_cleanup_dry_run_summary(session, runner):
    result = runner.invoke(app, ["cleanup", "--dry-run"])
    assert result.exit_code == 0
    assert "Cleanup (dry run)" in result.stdout
    assert "Files skipped" in result.stdout


def test_mailman_start_refuses_when_running(session, runner, isolated_env):
    LeaseFile(StateLayout(isolated_env.resolve())).acquire()
    result = runner.invoke(app, ["mailman", "start"])
    assert result.exit_code == 2
    assert "already running (PID:" in result.stderr


def test_mailman_start_cleans_stale_lease(session, runner, isolated_env, monkeypatch):
    state_dir = isolated_env / ".agentmail"
    state_dir.mkdir()
    (state_dir / "mailman.pid").write_text(f"{DEAD_PID}\n", encoding="utf-8")
    started: list[object] = []
    monkeypatch.setattr("agentmail.cli.run_mailman", lambda layout: started.append(layout))

    result = runner.invoke(app, ["mailman", "start"])

    assert result.exit_code == 0
    assert "Stale PID file found" in result.stderr
    assert "Mailman daemon started" in result.stdout
    assert len(started) == 1
    assert not (state_dir / "mailman.pid").exists()


def test_mailman_start_in_background(session, runner, monkeypatch):
    monkeypatch.delenv("AGENTMAIL_DAEMON_CHILD", raising=False)
    monkeypatch.setattr("agentmail.cli.spawn_background", lambda root: 4242)
    result = runner.invoke(app, ["mailman", "start", "--daemon"])
    assert result.exit_code == 0
    assert "started in background (PID: 4242)" in result.stdout


def test_mailman_status_and_stop_without_daemon(session, runner):
    assert "not running" in runner.invoke(app, ["mailman", "status"]).stdout
    assert runner.invoke(app, ["mailman", "stop"]).exit_code == 1
