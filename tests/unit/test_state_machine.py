"""Unit tests for the configuration-driven state machine."""

import itertools

import pytest

from forge.config.loader import DEFAULT_DEV_FLOW, DEFAULT_RUNTIME_FLOW
from forge.config.models import StateMachineConfig
from forge.state.machine import (
    InvalidConfigError,
    InvalidStateError,
    InvalidTransitionError,
    StateMachine,
    create_state_machine,
)


@pytest.fixture
def runtime_flow():
    return StateMachine(StateMachineConfig(**DEFAULT_RUNTIME_FLOW))


def test_dev_flow_happy_path(dev_flow):
    """Test a version walks from drafting to completed."""
    state = dev_flow.initial_state
    for event in ("SCAFFOLD", "SCAFFOLD_COMPLETE", "APPROVE", "START", "COMPLETE"):
        state = dev_flow.transition(state, event)
    assert state == "completed"


def test_dev_flow_pause_resume_abort(dev_flow):
    """Test pause, resume and abort transitions."""
    assert dev_flow.transition("executing", "PAUSE") == "paused"
    assert dev_flow.transition("paused", "RESUME") == "executing"
    assert dev_flow.transition("paused", "ABORT") == "ready"
    assert dev_flow.transition("executing", "ABORT") == "ready"
    assert dev_flow.transition("paused", "RETRY") == "executing"


def test_invalid_transition(dev_flow):
    """Test an event not allowed from a state raises."""
    with pytest.raises(InvalidTransitionError) as excinfo:
        dev_flow.transition("ready", "PAUSE")
    assert excinfo.value.current_state == "ready"
    assert excinfo.value.event == "PAUSE"
    assert "cannot apply 'PAUSE' in state 'ready'" in str(excinfo.value)


def test_unknown_state(dev_flow):
    """Test an unconfigured current state raises InvalidStateError."""
    with pytest.raises(InvalidStateError):
        dev_flow.transition("shipping", "START")


def test_every_state_event_pair_is_deterministic(dev_flow):
    """Test each (state, event) pair yields its configured target or raises."""
    table = {}
    for t in DEFAULT_DEV_FLOW["transitions"]:
        sources = t["from"] if isinstance(t["from"], list) else [t["from"]]
        for source in sources:
            table[(t["event"], source)] = t["to"]
    events = {t["event"] for t in DEFAULT_DEV_FLOW["transitions"]}

    for state, event in itertools.product(dev_flow.states, events):
        expected = table.get((event, state))
        if expected is None:
            assert not dev_flow.can_transition(state, event)
            with pytest.raises(InvalidTransitionError):
                dev_flow.transition(state, event)
        else:
            assert dev_flow.can_transition(state, event)
            assert dev_flow.transition(state, event) == expected
            assert dev_flow.is_valid_state(expected)


def test_available_events_and_next_states(dev_flow):
    """Test introspection of a state's outgoing transitions."""
    assert dev_flow.available_events("executing") == ["PAUSE", "RETRY", "ABORT", "COMPLETE", "FAIL"]
    assert dev_flow.next_states("reviewing") == ["drafting", "ready"]
    assert dev_flow.available_events("completed") == []


def test_runtime_flow(runtime_flow):
    """Test runtime flow cycle."""
    state = runtime_flow.transition("not_configured", "CONFIGURE")
    state = runtime_flow.transition(state, "RUN")
    assert runtime_flow.transition(state, "FAIL") == "failed"
    assert runtime_flow.transition("failed", "RESET") == "idle"


def test_invalid_config_rejected():
    """Test transitions to unknown states fail at construction."""
    config = StateMachineConfig(
        name="broken",
        initial_state="a",
        states=["a", "b"],
        transitions=[{"event": "GO", "from": "a", "to": "c"}],
    )
    with pytest.raises(InvalidConfigError) as excinfo:
        create_state_machine(config)
    assert any("invalid target state 'c'" in e for e in excinfo.value.errors)


def test_duplicate_transition_rejected():
    """Test the same event twice from one state is a config error."""
    config = StateMachineConfig(
        name="dup",
        initial_state="a",
        states=["a", "b"],
        transitions=[
            {"event": "GO", "from": "a", "to": "b"},
            {"event": "GO", "from": ["a"], "to": "a"},
        ],
    )
    with pytest.raises(InvalidConfigError):
        StateMachine(config)
