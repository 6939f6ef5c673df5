import logging
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from live_diarization import config
from live_diarization.dtos import AudioValidationResult, DiarizationResult, TimedSpeakerSegment
from live_diarization.errors import InvalidAudioError

logger = logging.getLogger("EmbeddingExtractor")


class EmbeddingExtractor(ABC):
    """
    Contract for the segmentation + embedding model.

    segment() is called on the inference worker thread, never on the event loop.
    It must validate its input and raise InvalidAudioError instead of
    returning an empty success for empty, too short or non-finite audio.
    """

    min_audio_seconds: float = config.MIN_AUDIO_SECONDS

    def load(self):
        """One-time model/resource setup. Raise ModelLoadError on failure."""

    def validate_audio(self, samples: np.ndarray, sample_rate: int = config.SAMPLE_RATE) -> AudioValidationResult:
        audio = np.asarray(samples).reshape(-1)
        duration = len(audio) / sample_rate if sample_rate > 0 else 0.0
        issues = []

        if audio.size == 0:
            issues.append("Audio is empty")
        elif duration < self.min_audio_seconds:
            issues.append(f"Audio too short ({duration:.2f}s < {self.min_audio_seconds:.2f}s)")

        if audio.size and not np.all(np.isfinite(audio)):
            issues.append("Audio contains NaN or infinite samples")

        return AudioValidationResult(is_valid=not issues, duration_seconds=duration, issues=issues)

    def ensure_valid(self, samples: np.ndarray, sample_rate: int = config.SAMPLE_RATE):
        validation = self.validate_audio(samples, sample_rate)
        if not validation.is_valid:
            raise InvalidAudioError("; ".join(validation.issues))

    @abstractmethod
    def segment(self, samples: np.ndarray, sample_rate: int = config.SAMPLE_RATE) -> DiarizationResult:
        """Segment speech and embed each segment. Segment times are relative to samples[0]."""


def best_segment(result: Optional[DiarizationResult]) -> Optional[TimedSpeakerSegment]:
    """
    Longest segment; ties broken by higher quality score.
    """
    if result is None or not result.segments:
        return None
    return max(result.segments, key=lambda s: (s.duration_seconds, s.quality_score))
