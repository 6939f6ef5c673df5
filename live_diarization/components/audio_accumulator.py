import logging
import threading
from typing import List, Optional

import numpy as np

from live_diarization import config
from live_diarization.dtos import DropReport

logger = logging.getLogger("AudioAccumulator")


class AudioAccumulator:
    """
    Component 2: AudioAccumulator

    Responsibility:
    - Live window buffer: bounded, oldest samples dropped on overflow (backpressure).
    - Full-recording buffer: unbounded, never drops. Cleared only after a successful final pass.
    - Drop bookkeeping (total / consecutive / terminal crossing).

    The window handed to inference stays at the front of the live buffer
    ("in flight") until release_in_flight(), so the cap bounds the whole
    backlog. Samples appended meanwhile are pending for the next window.
    The live buffer is always a suffix of the full recording.
    """

    def __init__(
        self,
        sample_rate: int = config.SAMPLE_RATE,
        max_live_buffer_seconds: float = 15.0,
        backpressure_enabled: bool = True,
        terminal_drop_threshold: int = 50,
        live_enabled: bool = True,
    ):
        self.sample_rate = sample_rate
        self.max_live_samples = int(sample_rate * max_live_buffer_seconds)
        self.backpressure_enabled = backpressure_enabled
        self.terminal_drop_threshold = terminal_drop_threshold
        self.live_enabled = live_enabled
        self.lock = threading.Lock()

        self._live = np.zeros(0, dtype=np.float32)
        self._in_flight = 0
        self._full_chunks: List[np.ndarray] = []
        self._full_len = 0

        self.drop_count = 0
        self.consecutive_drops = 0
        self.dropped_samples = 0
        self._terminal_fired = False

    # --- Introspection ---

    @property
    def live_samples(self) -> int:
        return len(self._live)

    @property
    def live_seconds(self) -> float:
        return len(self._live) / self.sample_rate

    @property
    def in_flight_samples(self) -> int:
        return self._in_flight

    @property
    def pending_samples(self) -> int:
        """Live samples not yet handed to inference."""
        return len(self._live) - self._in_flight

    @property
    def full_samples(self) -> int:
        return self._full_len

    @property
    def window_offset_samples(self) -> int:
        """Recording position of the first live sample."""
        return self._full_len - len(self._live)

    # --- Mutation ---

    def append(self, samples: np.ndarray) -> Optional[DropReport]:
        """
        Push samples onto both buffers.
        Returns a DropReport when the live cap forced a trim, else None.
        """
        chunk = np.asarray(samples, dtype=np.float32).reshape(-1)
        if chunk.size == 0:
            return None

        with self.lock:
            self._full_chunks.append(chunk.copy())
            self._full_len += len(chunk)

            if not self.live_enabled:
                return None

            self._live = np.concatenate([self._live, chunk])

            if not self.backpressure_enabled or len(self._live) <= self.max_live_samples:
                self.consecutive_drops = 0
                self._terminal_fired = False
                return None

            overflow = len(self._live) - self.max_live_samples
            # Drop oldest. The in-flight window goes first.
            self._live = self._live[overflow:].copy()
            self._in_flight = max(0, self._in_flight - overflow)

            self.drop_count += 1
            self.consecutive_drops += 1
            self.dropped_samples += overflow
            live_sec = len(self._live) / self.sample_rate

            logger.warning(
                f"Backpressure drop: {overflow} samples (~{overflow / self.sample_rate:.2f} s), "
                f"liveBuffer={live_sec:.2f} s, consecutive={self.consecutive_drops}"
            )

            terminal = False
            if self.consecutive_drops >= self.terminal_drop_threshold and not self._terminal_fired:
                self._terminal_fired = True
                terminal = True
                logger.error(
                    f"TERMINAL BACKPRESSURE: {self.consecutive_drops} consecutive drops - producer persistently ahead of inference"
                )

            return DropReport(
                dropped_samples=overflow,
                live_buffer_seconds=live_sec,
                consecutive_drops=self.consecutive_drops,
                terminal=terminal,
            )

    def drain_live_window(self, max_samples: Optional[int] = None) -> np.ndarray:
        """
        Hand the oldest pending samples (up to max_samples, default all) to inference.
        They stay in the live buffer as in-flight until release_in_flight().
        """
        with self.lock:
            if self._in_flight:
                raise RuntimeError("A live window is already in flight")
            count = len(self._live) if max_samples is None else min(max_samples, len(self._live))
            self._in_flight = count
            return self._live[:count].copy()

    def release_in_flight(self):
        """Inference finished: remove what is left of the in-flight window."""
        with self.lock:
            self._live = self._live[self._in_flight:].copy()
            self._in_flight = 0

    def drain_full_recording(self) -> np.ndarray:
        """
        Snapshot of everything captured so far. Does not clear.
        """
        with self.lock:
            if len(self._full_chunks) > 1:
                self._full_chunks = [np.concatenate(self._full_chunks)]
            if not self._full_chunks:
                return np.zeros(0, dtype=np.float32)
            return self._full_chunks[0].copy()

    def clear_full_recording(self):
        with self.lock:
            self._full_chunks = []
            self._full_len = 0

    def discard_live(self):
        """Drop the live backlog and drop counters; the full recording is untouched."""
        with self.lock:
            self._live = np.zeros(0, dtype=np.float32)
            self._in_flight = 0
            self.consecutive_drops = 0
            self._terminal_fired = False

    def reset(self):
        self.discard_live()
        self.clear_full_recording()
        with self.lock:
            self.drop_count = 0
            self.dropped_samples = 0
