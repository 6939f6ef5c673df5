import threading
from typing import List, Optional

import numpy as np

from live_diarization import config
from live_diarization.components.embedding_extractor import EmbeddingExtractor
from live_diarization.dtos import DiarizationResult, PipelineTimings, TimedSpeakerSegment

DIM = 16


def voice_embedding(voice: int, dim: int = DIM) -> np.ndarray:
    """Orthogonal unit vector per voice id."""
    emb = np.zeros(dim, dtype=np.float32)
    emb[voice % dim] = 1.0
    return emb


def tone(seconds: float, voice: int, sample_rate: int = config.SAMPLE_RATE) -> np.ndarray:
    """Sine whose peak amplitude (voice / 10) encodes the speaker."""
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    return (voice / 10.0 * np.sin(2 * np.pi * 220.0 * t)).astype(np.float32)


def silence(seconds: float, sample_rate: int = config.SAMPLE_RATE) -> np.ndarray:
    return np.zeros(int(seconds * sample_rate), dtype=np.float32)


class FakeExtractor(EmbeddingExtractor):
    """
    Deterministic extractor for tests.
    Audio is split in 1 s blocks; each block's peak level names the voice.
    Consecutive blocks of the same voice form one segment; silent blocks and
    a trailing block under half a second are skipped.
    """

    def __init__(self, gate: Optional[threading.Event] = None):
        self.gate = gate
        self.calls: List[int] = []
        self.fail_load = False
        self.fail_segment = False
        self.loaded = False

    def load(self):
        if self.fail_load:
            raise RuntimeError("model weights missing")
        self.loaded = True

    def segment(self, samples, sample_rate=config.SAMPLE_RATE):
        self.calls.append(len(samples))
        if self.gate is not None:
            self.gate.wait(timeout=30)
        if self.fail_segment:
            raise RuntimeError("inference exploded")
        self.ensure_valid(samples, sample_rate)

        block = sample_rate
        runs = []
        for start in range(0, len(samples), block):
            chunk = samples[start:start + block]
            if len(chunk) < block // 2:
                break
            level = float(np.max(np.abs(chunk)))
            voice = int(round(level * 10))
            end = start + len(chunk)
            if voice == 0:
                continue
            if runs and runs[-1][0] == voice and runs[-1][2] == start:
                runs[-1][2] = end
            else:
                runs.append([voice, start, end])

        segments = [
            TimedSpeakerSegment(
                speaker_id=f"local_{voice}",
                embedding=voice_embedding(voice),
                start_time_seconds=start / sample_rate,
                end_time_seconds=end / sample_rate,
                quality_score=0.9,
            )
            for voice, start, end in runs
        ]
        return DiarizationResult(segments=segments, timings=PipelineTimings(segmentation_seconds=0.01))
