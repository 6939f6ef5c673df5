from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np


@dataclass(frozen=True)
class TimedSpeakerSegment:
    """
    Who spoke when. Immutable once produced by the extractor.
    speaker_id is a plain identifier into the SpeakerIdentityStore, never a reference.
    """
    speaker_id: str
    embedding: np.ndarray # float32, 1D
    start_time_seconds: float
    end_time_seconds: float
    quality_score: float = 1.0

    def __post_init__(self):
        if self.end_time_seconds < self.start_time_seconds:
            raise ValueError(
                f"Segment ends before it starts: {self.start_time_seconds} > {self.end_time_seconds}"
            )
        emb = np.asarray(self.embedding, dtype=np.float32).reshape(-1)
        object.__setattr__(self, "embedding", emb)

    @property
    def duration_seconds(self) -> float:
        return self.end_time_seconds - self.start_time_seconds

    def to_dict(self, include_embedding: bool = False) -> dict:
        out = {
            "speaker_id": self.speaker_id,
            "start": round(float(self.start_time_seconds), 3),
            "end": round(float(self.end_time_seconds), 3),
            "quality": float(self.quality_score),
        }
        if include_embedding:
            out["embedding"] = self.embedding.tolist()
        return out


@dataclass(frozen=True)
class PipelineTimings:
    """
    Stage-duration breakdown of one extractor call (seconds).
    """
    model_load_seconds: float = 0.0
    audio_loading_seconds: float = 0.0
    segmentation_seconds: float = 0.0
    embedding_extraction_seconds: float = 0.0
    speaker_clustering_seconds: float = 0.0
    post_processing_seconds: float = 0.0

    @property
    def total_inference_seconds(self) -> float:
        return self.segmentation_seconds + self.embedding_extraction_seconds + self.speaker_clustering_seconds

    @property
    def total_processing_seconds(self) -> float:
        return (
            self.model_load_seconds + self.audio_loading_seconds
            + self.total_inference_seconds + self.post_processing_seconds
        )

    def _stages(self) -> Dict[str, float]:
        return {
            "Model Load": self.model_load_seconds,
            "Audio Loading": self.audio_loading_seconds,
            "Segmentation": self.segmentation_seconds,
            "Embedding Extraction": self.embedding_extraction_seconds,
            "Speaker Clustering": self.speaker_clustering_seconds,
            "Post Processing": self.post_processing_seconds,
        }

    def stage_percentages(self) -> Dict[str, float]:
        total = self.total_processing_seconds
        if total <= 0:
            return {}
        return {name: secs / total * 100 for name, secs in self._stages().items()}

    def bottleneck_stage(self) -> str:
        stages = self._stages()
        return max(stages, key=stages.get)

    def to_dict(self) -> dict:
        out = dict(self._stages())
        out["Total"] = self.total_processing_seconds
        return out


@dataclass
class DiarizationResult:
    segments: List[TimedSpeakerSegment] = field(default_factory=list)
    speaker_database: Optional[Dict[str, List[float]]] = None # Debug only
    timings: Optional[PipelineTimings] = None

    def speaker_ids(self) -> List[str]:
        seen = []
        for seg in self.segments:
            if seg.speaker_id not in seen:
                seen.append(seg.speaker_id)
        return seen

    def to_dict(self) -> dict:
        out = {
            "segments": [s.to_dict() for s in self.segments],
            "speakers": self.speaker_ids(),
        }
        if self.speaker_database is not None:
            out["speaker_database"] = self.speaker_database
        if self.timings is not None:
            out["timings"] = self.timings.to_dict()
        return out


@dataclass(frozen=True)
class AudioValidationResult:
    is_valid: bool
    duration_seconds: float
    issues: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class KnownProfile:
    """
    Hydration record from a persistence collaborator.
    """
    id: str
    embedding: List[float]
    duration: float = 0.0


@dataclass(frozen=True)
class MatchResult:
    speaker_id: Optional[str] # None = unmatched
    distance: float

    @property
    def matched(self) -> bool:
        return self.speaker_id is not None


@dataclass(frozen=True)
class DropReport:
    """
    Outcome of one append that overflowed the live buffer cap.
    """
    dropped_samples: int
    live_buffer_seconds: float
    consecutive_drops: int
    terminal: bool = False # True only on the append that crossed the terminal threshold
