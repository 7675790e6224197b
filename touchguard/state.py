"""Operating State - Run state machine and the shared session record

The state machine gates which operations are allowed:

    COLLECTING_A --train A done--> COLLECTING_B --train B done--> READY
    READY --run--> RUNNING --pause | loop abort | classifier emptied--> READY
    any --reset--> COLLECTING_A

GuardSession carries the flags the training controller and the inference
loop share (busy/running/touched/latch/progress) so each collaborator gets
the same object by reference instead of reaching for module globals.
"""

import threading
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from .classifier import LABELS, NOT_TOUCH_LABEL, TOUCHED_LABEL

logger = logging.getLogger(__name__)


class RunState(Enum):
    """Operating modes (value is the UI step number)"""
    COLLECTING_A = 1  # Gathering "not touched" examples
    COLLECTING_B = 2  # Gathering "touched" examples
    READY = 3         # Both classes trained, inference may start
    RUNNING = 4       # Inference loop active


class StateEvent(Enum):
    """Inputs that drive state transitions"""
    TRAINED_A = "trained_a"
    TRAINED_B = "trained_b"
    RESTORED = "restored"  # Persisted dataset with both classes loaded
    RUN = "run"
    STOP = "stop"          # pause, loop abort or classifier emptied
    RESET = "reset"


TRANSITIONS = {
    (RunState.COLLECTING_A, StateEvent.TRAINED_A): RunState.COLLECTING_B,
    (RunState.COLLECTING_B, StateEvent.TRAINED_B): RunState.READY,
    (RunState.COLLECTING_A, StateEvent.RESTORED): RunState.READY,
    (RunState.READY, StateEvent.RUN): RunState.RUNNING,
    (RunState.RUNNING, StateEvent.STOP): RunState.READY,
}

# Which class may be trained in which state
TRAINABLE_LABEL = {
    RunState.COLLECTING_A: NOT_TOUCH_LABEL,
    RunState.COLLECTING_B: TOUCHED_LABEL,
}


class StateMachine:
    """Thread-safe operating state machine

    Usage:
        sm = StateMachine()
        sm.apply(StateEvent.TRAINED_A)   # -> COLLECTING_B
        sm.can_train(TOUCHED_LABEL)      # True
    """

    def __init__(self, initial: RunState = RunState.COLLECTING_A):
        self._state = initial
        self._lock = threading.Lock()

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    def can_apply(self, event: StateEvent) -> bool:
        with self._lock:
            return event == StateEvent.RESET or (self._state, event) in TRANSITIONS

    def apply(self, event: StateEvent) -> bool:
        """Apply an event

        Args:
            event: Transition input

        Returns:
            True if the state changed (or reset), False if the event was rejected
        """
        with self._lock:
            previous = self._state
            if event == StateEvent.RESET:
                self._state = RunState.COLLECTING_A
            else:
                target = TRANSITIONS.get((previous, event))
                if target is None:
                    logger.debug(f"Rejected {event.value} in state {previous.name}")
                    return False
                self._state = target

        if previous != self._state:
            logger.debug(f"State {previous.name} -> {self._state.name}")
        return True

    def can_train(self, label: str) -> bool:
        return TRAINABLE_LABEL.get(self.state) == label

    def can_run(self) -> bool:
        return self.state == RunState.READY

    @property
    def is_running(self) -> bool:
        return self.state == RunState.RUNNING


@dataclass
class TrainingSession:
    """One in-flight training batch"""
    label: str
    target: int
    completed: int = 0

    @property
    def percent(self) -> int:
        if self.target <= 0:
            return 100
        # Halves round up
        return int(100 * self.completed / self.target + 0.5)


def _zero_counts() -> Dict[str, int]:
    return {label: 0 for label in LABELS}


@dataclass
class GuardSession:
    """Mutable state shared by the training controller and inference loop"""
    machine: StateMachine = field(default_factory=StateMachine)

    # Training exclusivity: flag set for the batch, lock held for its duration
    training: bool = False
    training_lock: threading.Lock = field(default_factory=threading.Lock)
    active_training: Optional[TrainingSession] = None

    # Inference loop
    running: bool = False
    may_alert: bool = True
    touched: bool = False
    fps: int = 0

    # Display values
    progress: Dict[str, int] = field(default_factory=_zero_counts)
    display_counts: Dict[str, int] = field(default_factory=_zero_counts)

    last_error: Optional[str] = None

    @property
    def state(self) -> RunState:
        return self.machine.state

    @property
    def busy(self) -> bool:
        """True while a training batch holds the session"""
        return self.training or self.training_lock.locked()

    @property
    def allow_run(self) -> bool:
        """Both classes have at least one example"""
        return all(self.display_counts.get(label, 0) > 0 for label in LABELS)

    def reset_display(self):
        self.progress = _zero_counts()
        self.display_counts = _zero_counts()
