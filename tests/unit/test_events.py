"""Unit tests for execution events and terminal reporting."""

import logging

from forge.observability.events import EventKind, ExecutionEvents, TerminalReporter


def test_listeners_receive_events():
    """Test emitted events reach every listener."""
    received = []
    events = ExecutionEvents([received.append])

    events.task_started("exec_1", "001", "Create package layout")
    events.progress("exec_1", 1, 3)
    events.blocked("exec_1", ["004", "005"])

    assert [e.kind for e in received] == [EventKind.TASK_STARTED, EventKind.PROGRESS, EventKind.BLOCKED]
    assert received[0].task_id == "001"
    assert received[1].data == {"completed": 1, "total": 3}
    assert received[2].message == "No eligible task; blocked: 004, 005"


def test_listener_failure_is_logged(caplog):
    """Test a failing listener does not stop the others."""
    received = []

    def broken(event):
        raise RuntimeError("listener down")

    events = ExecutionEvents([broken])
    events.subscribe(received.append)

    with caplog.at_level(logging.INFO, logger="forge.observability.events"):
        events.completed("exec_1")

    assert len(received) == 1
    assert any("Event listener failed" in r.getMessage() for r in caplog.records)
    assert any(getattr(r, "execution_id", None) == "exec_1" for r in caplog.records)


def test_terminal_reporter(capsys):
    """Test reporter prints symbols and hides progress unless verbose."""
    events = ExecutionEvents([TerminalReporter(verbose=False)])
    events.task_done("exec_1", "001")
    events.progress("exec_1", 1, 3)
    events.task_failed("exec_1", "002", "tests failed")

    captured = capsys.readouterr()
    assert "✅ Task 001 done" in captured.out
    assert "1/3" not in captured.out
    assert "❌ Task 002 failed: tests failed" in captured.err

    verbose = ExecutionEvents([TerminalReporter(verbose=True)])
    verbose.progress("exec_1", 2, 3)
    assert "2/3 tasks" in capsys.readouterr().out
