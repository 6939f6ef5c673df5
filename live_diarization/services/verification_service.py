import logging

import numpy as np

from live_diarization import config
from live_diarization.components.embedding_extractor import EmbeddingExtractor
from live_diarization.components.inference_executor import InferenceExecutor
from live_diarization.components.speaker_utils import cosine_distance, validate_embedding
from live_diarization.errors import InvalidEmbeddingError, SpeakerNotFoundError
from live_diarization.services.enrollment_service import extract_best_embedding
from live_diarization.speaker_db import SpeakerIdentityStore, SpeakerProfile

logger = logging.getLogger("VerificationService")


class VerificationService:
    """
    Scores how well fresh audio matches a stored profile.
    Read-only: never mutates the store.
    """

    def __init__(self, store: SpeakerIdentityStore, extractor: EmbeddingExtractor, executor: InferenceExecutor):
        self.store = store
        self.extractor = extractor
        self.executor = executor

    async def similarity(self, samples: np.ndarray, speaker_id: str, sample_rate: int = config.SAMPLE_RATE) -> float:
        target = self.store.lookup(speaker_id)
        if target is None:
            raise SpeakerNotFoundError(speaker_id)
        return await self.similarity_to_profile(samples, target, sample_rate)

    async def similarity_to_profile(self, samples: np.ndarray, target: SpeakerProfile, sample_rate: int = config.SAMPLE_RATE) -> float:
        """confidence = clamp(1 - cosine_distance, 0, 1)"""
        if target.current_embedding is None or not validate_embedding(target.current_embedding):
            raise InvalidEmbeddingError(f"Speaker {target.id} has no stored embedding")

        embedding, _ = await extract_best_embedding(self.extractor, self.executor, samples, sample_rate)
        distance = cosine_distance(embedding, target.current_embedding)
        confidence = min(1.0, max(0.0, 1.0 - distance))
        logger.info(f"Verification vs {target.name}: distance={distance:.3f} confidence={confidence:.3f}")
        return confidence
