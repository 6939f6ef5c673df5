import os
from dataclasses import dataclass, fields
from typing import Optional

from dotenv import load_dotenv

from live_diarization.errors import ConfigurationError

# --- Audio ---
SAMPLE_RATE = 16000
MIN_AUDIO_SECONDS = 1.0 # Extractor rejects anything shorter

# --- Identity ---
MAX_RAW_EMBEDDINGS = 50
MIN_EMBEDDING_MAGNITUDE = 0.1 # Anything at or below is treated as noise
SPEAKER_NAME_PREFIX = "Speaker "
SPEAKER_COLORS = (
    "blue", "green", "orange", "purple", "pink",
    "yellow", "cyan", "mint", "indigo", "brown",
)

# --- Default Extractor (TitaNet) ---
# Can be overridden by env vars if needed
EMBEDDING_MODEL = os.getenv("DIARIZATION_EMBEDDING_MODEL", "nvidia/speakerverification_en_titanet_large")
FRAME_SECONDS = 0.01 # Activity frame (10ms)
ENERGY_THRESH_DBFS = -45
EMBEDDING_WINDOW_SECONDS = 1.5


@dataclass(frozen=True)
class DiarizerConfig:
    """
    Clustering / segmentation parameters shared by the extractor and the
    identity matcher. Immutable for the life of a session.
    """
    clustering_threshold: float = 0.7 # 0.5-0.9. Lower = fewer, broader speakers
    min_speech_duration: float = 1.0 # Shorter segments never create a profile
    min_embedding_update_duration: float = 2.0 # Shorter segments never update a profile
    min_silence_gap: float = 0.5 # Same-speaker segments closer than this are joined
    num_clusters: int = -1 # Expected speakers, -1 = automatic
    min_active_frames_count: float = 10.0
    chunk_duration: float = 10.0
    chunk_overlap: float = 0.0
    debug_mode: bool = False

    def __post_init__(self):
        if not 0.0 < self.clustering_threshold <= 1.0:
            raise ConfigurationError(f"clustering_threshold must be in (0, 1], got {self.clustering_threshold}")
        for name in ("min_speech_duration", "min_embedding_update_duration", "min_silence_gap", "min_active_frames_count", "chunk_overlap"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.chunk_duration <= 0:
            raise ConfigurationError(f"chunk_duration must be > 0, got {self.chunk_duration}")
        if self.chunk_overlap >= self.chunk_duration:
            raise ConfigurationError("chunk_overlap must be smaller than chunk_duration")
        if self.num_clusters == 0 or self.num_clusters < -1:
            raise ConfigurationError(f"num_clusters must be -1 (automatic) or positive, got {self.num_clusters}")

    @property
    def max_match_distance(self) -> float:
        return 1.0 - self.clustering_threshold

    @classmethod
    def from_env(cls, prefix: str = "DIARIZATION_") -> "DiarizerConfig":
        return cls(**_env_overrides(cls, prefix))


@dataclass(frozen=True)
class StreamingConfig:
    """
    Live streaming controls: backpressure, adaptive windowing and
    adaptive pause/resume. Validated once at construction.
    """
    enabled: bool = True
    live_processing_enabled: bool = False
    sample_rate: int = SAMPLE_RATE

    # Backpressure (live buffer only, never the full recording)
    backpressure_enabled: bool = True
    max_live_buffer_seconds: float = 15.0
    show_backpressure_alerts: bool = True
    backpressure_notice_interval_seconds: float = 10.0
    terminal_drop_threshold: int = 50

    # Adaptive window
    processing_window_seconds: float = 5.0
    adaptive_window_enabled: bool = True
    min_window_seconds: float = 1.0
    max_window_seconds: float = 6.0
    window_step_seconds: float = 0.5

    # Adaptive pause / resume
    adaptive_rate_enabled: bool = True
    cooldown_seconds: float = 15.0
    resume_window_nudge_seconds: float = 0.5
    pause_drop_threshold: int = 3

    def __post_init__(self):
        if self.sample_rate != SAMPLE_RATE:
            raise ConfigurationError(f"Pipeline runs at {SAMPLE_RATE} Hz, got sample_rate={self.sample_rate}")
        if self.processing_window_seconds <= 0:
            raise ConfigurationError("processing_window_seconds must be > 0")
        if not 0 < self.min_window_seconds <= self.max_window_seconds:
            raise ConfigurationError(
                f"Invalid window bounds [{self.min_window_seconds}, {self.max_window_seconds}]"
            )
        if self.adaptive_window_enabled and not (
            self.min_window_seconds <= self.processing_window_seconds <= self.max_window_seconds
        ):
            raise ConfigurationError(
                f"processing_window_seconds={self.processing_window_seconds} outside "
                f"[{self.min_window_seconds}, {self.max_window_seconds}] with adaptive windowing enabled"
            )
        if self.window_step_seconds <= 0 or self.resume_window_nudge_seconds < 0:
            raise ConfigurationError("Window step sizes must be positive")
        if self.max_live_buffer_seconds <= 0:
            raise ConfigurationError("max_live_buffer_seconds must be > 0")
        if self.backpressure_enabled and self.max_live_buffer_seconds < self.largest_window_seconds:
            # A window larger than the cap could never trigger
            raise ConfigurationError(
                f"max_live_buffer_seconds={self.max_live_buffer_seconds} is smaller than the "
                f"largest processing window ({self.largest_window_seconds}s)"
            )
        if self.cooldown_seconds < 0 or self.backpressure_notice_interval_seconds < 0:
            raise ConfigurationError("Cooldown and notice intervals must be >= 0")
        if self.pause_drop_threshold < 1 or self.terminal_drop_threshold < 1:
            raise ConfigurationError("Drop thresholds must be >= 1")

    @property
    def largest_window_seconds(self) -> float:
        # Resume nudges can grow even a fixed window up to max_window_seconds
        if self.adaptive_window_enabled or self.adaptive_rate_enabled:
            return max(self.max_window_seconds, self.processing_window_seconds)
        return self.processing_window_seconds

    @property
    def max_live_buffer_samples(self) -> int:
        return int(self.sample_rate * self.max_live_buffer_seconds)

    @classmethod
    def from_env(cls, prefix: str = "DIARIZATION_") -> "StreamingConfig":
        return cls(**_env_overrides(cls, prefix))


def _env_overrides(config_cls, prefix: str) -> dict:
    """
    Collect PREFIX_FIELD_NAME overrides for a config dataclass.
    Loads .env first so local overrides apply.
    """
    load_dotenv()
    overrides = {}
    for f in fields(config_cls):
        raw: Optional[str] = os.environ.get(f"{prefix}{f.name.upper()}")
        if raw is None:
            continue
        try:
            if f.type in (bool, "bool"):
                overrides[f.name] = raw.strip().lower() in ("1", "true", "yes", "on")
            elif f.type in (int, "int"):
                overrides[f.name] = int(raw)
            else:
                overrides[f.name] = float(raw)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {prefix}{f.name.upper()}: {raw!r}") from e
    return overrides
