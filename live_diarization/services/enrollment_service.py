import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from live_diarization import config
from live_diarization.components.embedding_extractor import EmbeddingExtractor, best_segment
from live_diarization.components.inference_executor import InferenceExecutor
from live_diarization.components.speaker_utils import average_embeddings, validate_embedding
from live_diarization.errors import InvalidAudioError, InvalidEmbeddingError, NoSpeechDetectedError
from live_diarization.speaker_db import SpeakerIdentityStore, SpeakerProfile

logger = logging.getLogger("EnrollmentService")


async def extract_best_embedding(
    extractor: EmbeddingExtractor,
    executor: InferenceExecutor,
    samples: np.ndarray,
    sample_rate: int = config.SAMPLE_RATE,
) -> Tuple[np.ndarray, float]:
    """
    Validate -> segment on the worker -> best segment -> embedding check.
    Returns (embedding, segment_duration).
    """
    audio = np.asarray(samples, dtype=np.float32).reshape(-1)
    extractor.ensure_valid(audio, sample_rate)

    result, _ = await executor.run(extractor.segment, audio, sample_rate)
    best = best_segment(result)
    if best is None:
        raise NoSpeechDetectedError()
    if not validate_embedding(best.embedding):
        raise InvalidEmbeddingError("Best segment produced an unusable embedding")
    return best.embedding, best.duration_seconds


class EnrollmentService:
    """
    Builds speaker profiles from sample audio.

    Profiles are only created or changed after every clip has been
    processed and validated, so a failed enrollment leaves the store as it was.
    """

    def __init__(self, store: SpeakerIdentityStore, extractor: EmbeddingExtractor, executor: InferenceExecutor):
        self.store = store
        self.extractor = extractor
        self.executor = executor

    async def enroll_from_clip(self, samples: np.ndarray, name: str, sample_rate: int = config.SAMPLE_RATE) -> SpeakerProfile:
        embedding, duration = await extract_best_embedding(self.extractor, self.executor, samples, sample_rate)
        profile = self.store.create(embedding, name=name, duration=duration, segment_id="enrollment")
        logger.info(f"Enrolled {name} ({profile.id}) from one clip, {duration:.2f}s of speech")
        return profile

    async def enroll_from_clips(self, clips: Sequence[np.ndarray], name: str, sample_rate: int = config.SAMPLE_RATE) -> SpeakerProfile:
        embeddings, duration = await self._collect(clips, sample_rate)
        averaged = self._fuse(embeddings)
        profile = self.store.create(averaged, name=name, duration=duration, segment_id="enrollment")
        logger.info(f"Enrolled {name} ({profile.id}) from {len(embeddings)}/{len(clips)} clips")
        return profile

    async def enhance(self, speaker_id: str, clips: Sequence[np.ndarray], sample_rate: int = config.SAMPLE_RATE) -> SpeakerProfile:
        """
        Fuse new clips with the existing profile (equal weight across old + new)
        and update it in place.
        """
        current = self.store.get(speaker_id)
        embeddings, duration = await self._collect(clips, sample_rate)
        fused = self._fuse([current.current_embedding] + embeddings)
        profile = self.store.reseed(speaker_id, fused, segment_id="enhancement", duration_delta=duration)
        logger.info(f"Enhanced {profile.name} ({speaker_id}) with {len(embeddings)} clips")
        return profile

    async def _collect(self, clips: Sequence[np.ndarray], sample_rate: int) -> Tuple[List[np.ndarray], float]:
        embeddings = []
        total = 0.0
        for i, clip in enumerate(clips):
            try:
                emb, dur = await extract_best_embedding(self.extractor, self.executor, clip, sample_rate)
            except (InvalidAudioError, NoSpeechDetectedError, InvalidEmbeddingError) as e:
                logger.warning(f"Skipping clip {i}: {e}")
                continue
            embeddings.append(emb)
            total += dur

        if not embeddings:
            raise NoSpeechDetectedError("No clip yielded a valid speaker embedding")
        return embeddings, total

    @staticmethod
    def _fuse(embeddings: List[np.ndarray]) -> np.ndarray:
        fused: Optional[np.ndarray] = average_embeddings(embeddings)
        if fused is None or not validate_embedding(fused):
            raise InvalidEmbeddingError("Clip embeddings could not be averaged into a usable embedding")
        return fused
