import logging

from live_diarization import config

logger = logging.getLogger("AdaptiveWindow")


class AdaptiveWindowController:
    """
    Component 3: AdaptiveWindowController

    Hill-climbing on the live processing window:
    - ratio = inference_seconds / window_seconds after every live inference.
    - ratio > GROW_RATIO  -> grow by one step (fewer calls under load).
    - ratio < SHRINK_RATIO -> shrink by one step (lower latency with headroom).
    Always clamped to [min_seconds, max_seconds] while enabled.
    """

    GROW_RATIO = 0.8
    SHRINK_RATIO = 0.3

    def __init__(
        self,
        window_seconds: float = 5.0,
        min_seconds: float = 1.0,
        max_seconds: float = 6.0,
        step_seconds: float = 0.5,
        enabled: bool = True,
        sample_rate: int = config.SAMPLE_RATE,
    ):
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds
        self.step_seconds = step_seconds
        self.enabled = enabled
        self.sample_rate = sample_rate
        self.window_seconds = self._clamp(window_seconds) if enabled else window_seconds

    @property
    def window_samples(self) -> int:
        return int(self.sample_rate * self.window_seconds)

    def should_trigger(self, pending_samples: int) -> bool:
        return pending_samples > 0 and pending_samples >= self.window_samples

    def record_inference(self, inference_seconds: float) -> float:
        """Feed one observed inference duration. Returns the (possibly new) window."""
        if not self.enabled or self.window_seconds <= 0:
            return self.window_seconds

        ratio = inference_seconds / self.window_seconds
        if ratio > self.GROW_RATIO and self.window_seconds < self.max_seconds:
            self.window_seconds = self._clamp(self.window_seconds + self.step_seconds)
            logger.info(f"Inference slow (ratio={ratio:.2f}); window grown to {self.window_seconds:.2f}s")
        elif ratio < self.SHRINK_RATIO and self.window_seconds > self.min_seconds:
            self.window_seconds = self._clamp(self.window_seconds - self.step_seconds)
            logger.info(f"Inference fast (ratio={ratio:.2f}); window shrunk to {self.window_seconds:.2f}s")
        return self.window_seconds

    def nudge(self, step_seconds: float) -> float:
        """
        Grow the window once when live inference resumes.
        Applies even with adaptation disabled; only the upper bound is enforced.
        """
        if self.window_seconds < self.max_seconds:
            self.window_seconds = min(self.max_seconds, self.window_seconds + step_seconds)
        return self.window_seconds

    def _clamp(self, value: float) -> float:
        return min(self.max_seconds, max(self.min_seconds, value))
