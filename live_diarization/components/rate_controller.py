import logging
import time
from typing import Callable, Optional

logger = logging.getLogger("RateController")


class AdaptiveRateController:
    """
    Component 4: AdaptiveRateController

    Responsibility:
    - Pause live inference under sustained overload.
    - Re-enable it once the cooldown deadline has passed.
    Both operations are idempotent.
    """

    def __init__(
        self,
        enabled: bool = True,
        cooldown_seconds: float = 15.0,
        drop_threshold: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.enabled = enabled
        self.cooldown_seconds = cooldown_seconds
        self.drop_threshold = drop_threshold
        self.clock = clock

        self.paused = False
        self.cooldown_until: Optional[float] = None
        self.pause_count = 0

    @property
    def live_allowed(self) -> bool:
        return not self.paused

    def evaluate(self, consecutive_drops: int, live_seconds: float, window_seconds: float) -> bool:
        """
        Called after a backpressure drop. Returns True only on the call that paused.
        """
        if not self.enabled or self.paused:
            return False
        if consecutive_drops >= self.drop_threshold or live_seconds > 2.0 * window_seconds:
            self.paused = True
            self.cooldown_until = self.clock() + self.cooldown_seconds
            self.pause_count += 1
            logger.warning(
                f"Pausing live diarization due to sustained backpressure "
                f"(consecutive={consecutive_drops}, live={live_seconds:.2f}s); cooldown {self.cooldown_seconds:.0f}s"
            )
            return True
        return False

    def maybe_resume(self) -> bool:
        """
        Called on every append. Returns True only on the call that resumed.
        """
        if not self.paused or self.cooldown_until is None:
            return False
        if self.clock() < self.cooldown_until:
            return False
        self.paused = False
        self.cooldown_until = None
        return True

    def reset(self):
        self.paused = False
        self.cooldown_until = None
