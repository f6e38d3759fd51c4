from __future__ import annotations

import logging
from enum import Enum, auto

logger = logging.getLogger(__name__)


class State(Enum):
    DISABLED = auto()
    STARTING = auto()
    LISTENING = auto()
    PAUSED = auto()
    RESTARTING = auto()


class FSM:
    def __init__(self) -> None:
        self.state = State.DISABLED
        self.status_text = "Off"

    def _move(self, state: State, status: str) -> None:
        if state is not self.state:
            logger.debug("%s -> %s (%s)", self.state.name, state.name, status)
        self.state = state
        self.status_text = status

    def set_status(self, status: str) -> None:
        self.status_text = status

    def to_disabled(self, status: str = "Off") -> None:
        self._move(State.DISABLED, status)

    def to_starting(self, status: str = "Starting...") -> None:
        self._move(State.STARTING, status)

    def to_listening(self, status: str = "Listening") -> None:
        self._move(State.LISTENING, status)

    def to_paused(self, status: str = "Paused") -> None:
        self._move(State.PAUSED, status)

    def to_restarting(self, status: str) -> None:
        self._move(State.RESTARTING, status)
