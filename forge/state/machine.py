"""Configuration-driven state machine evaluator."""

import logging
from types import MappingProxyType

from ..config.models import StateMachineConfig
from ..errors import InvalidTransition

logger = logging.getLogger(__name__)


class InvalidTransitionError(InvalidTransition):
    """No transition for the event from the current state."""

    def __init__(self, current_state: str, event: str):
        super().__init__(f"Invalid transition: cannot apply '{event}' in state '{current_state}'")
        self.current_state = current_state
        self.event = event


class InvalidStateError(InvalidTransition):
    """State is not part of the configuration."""

    def __init__(self, state: str, machine: str):
        super().__init__(f"Invalid state '{state}' for state machine '{machine}'")
        self.state = state


class InvalidConfigError(Exception):
    """State machine configuration is inconsistent."""

    def __init__(self, errors: list[str]):
        super().__init__("Invalid state machine config: " + "; ".join(errors))
        self.errors = errors


def _validate(config: StateMachineConfig) -> list[str]:
    errors = []
    states = set(config.states)

    if not config.states:
        errors.append("no states defined")
    if config.initial_state not in states:
        errors.append(f"initial state '{config.initial_state}' is not a valid state")

    seen: set[tuple[str, str]] = set()
    for t in config.transitions:
        if not t.from_states:
            errors.append(f"transition {t.event} has no source states")
        for source in t.from_states:
            if source not in states:
                errors.append(f"transition {t.event}: invalid source state '{source}'")
            if (t.event, source) in seen:
                errors.append(f"duplicate transition {t.event} from '{source}'")
            seen.add((t.event, source))
        if t.to not in states:
            errors.append(f"transition {t.event}: invalid target state '{t.to}'")

    return errors


class StateMachine:
    """Evaluates transitions against an immutable lookup table.

    The machine holds no current state. Callers pass the state they hold
    and get the destination back, so one instance serves every entity that
    follows the same configuration.
    """

    def __init__(self, config: StateMachineConfig):
        """Build the transition table.

        Args:
            config: Loaded state machine configuration

        Raises:
            InvalidConfigError: If the configuration references unknown states
        """
        errors = _validate(config)
        if errors:
            raise InvalidConfigError(errors)

        self.config = config
        self._states = frozenset(config.states)
        self._table = MappingProxyType(
            {
                (t.event, source): t.to
                for t in config.transitions
                for source in t.from_states
            }
        )

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def initial_state(self) -> str:
        return self.config.initial_state

    @property
    def states(self) -> list[str]:
        return list(self.config.states)

    def is_valid_state(self, state: str) -> bool:
        return state in self._states

    def transition(self, current_state: str, event: str) -> str:
        """Return the destination state for an event.

        Args:
            current_state: State the entity is in
            event: Event name

        Returns:
            Destination state

        Raises:
            InvalidStateError: If current_state is not configured
            InvalidTransitionError: If no transition matches
        """
        if current_state not in self._states:
            raise InvalidStateError(current_state, self.name)

        target = self._table.get((event, current_state))
        if target is None:
            raise InvalidTransitionError(current_state, event)

        logger.debug(f"{self.name}: {current_state} --{event}--> {target}")
        return target

    def can_transition(self, current_state: str, event: str) -> bool:
        return (event, current_state) in self._table

    def available_events(self, current_state: str) -> list[str]:
        """Events accepted from a state, in configuration order."""
        events = []
        for t in self.config.transitions:
            if current_state in t.from_states and t.event not in events:
                events.append(t.event)
        return events

    def next_states(self, current_state: str) -> list[str]:
        """States reachable from a state in one transition."""
        targets = []
        for event in self.available_events(current_state):
            target = self._table[(event, current_state)]
            if target not in targets:
                targets.append(target)
        return targets


def create_state_machine(config: StateMachineConfig) -> StateMachine:
    """Create a state machine from configuration."""
    return StateMachine(config)
