import logging
from enum import Enum
from typing import Dict, FrozenSet

from live_diarization.errors import ProcessingError

logger = logging.getLogger("PipelineStateMachine")


class PipelineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    IDLE = "idle"


_TRANSITIONS: Dict[PipelineState, FrozenSet[PipelineState]] = {
    PipelineState.UNINITIALIZED: frozenset({PipelineState.INITIALIZED}),
    PipelineState.INITIALIZED: frozenset({PipelineState.STREAMING, PipelineState.FINALIZING}),
    PipelineState.STREAMING: frozenset({PipelineState.FINALIZING, PipelineState.IDLE}), # IDLE via reset()
    PipelineState.FINALIZING: frozenset({PipelineState.IDLE}),
    PipelineState.IDLE: frozenset({PipelineState.STREAMING, PipelineState.FINALIZING}),
}


class PipelineStateMachine:
    """
    Lifecycle: UNINITIALIZED -> INITIALIZED -> STREAMING -> FINALIZING -> IDLE.
    IDLE -> STREAMING on the next recording, STREAMING -> IDLE on reset.
    Anything else is a bug and raises.
    """

    def __init__(self):
        self.state = PipelineState.UNINITIALIZED
        self.history = [self.state]

    @property
    def initialized(self) -> bool:
        return self.state != PipelineState.UNINITIALIZED

    def can(self, target: PipelineState) -> bool:
        return target in _TRANSITIONS[self.state]

    def transition(self, target: PipelineState):
        if target == self.state:
            return
        if not self.can(target):
            raise ProcessingError(f"Illegal state transition {self.state.value} -> {target.value}")
        logger.info(f"State: {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)
