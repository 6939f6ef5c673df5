import logging
from typing import Optional, Sequence

import numpy as np

from live_diarization import config

logger = logging.getLogger("SpeakerUtils")


def as_embedding(vector) -> np.ndarray:
    """Coerce list / array input to a flat float32 vector."""
    return np.asarray(vector, dtype=np.float32).reshape(-1)


def embedding_magnitude(vector) -> float:
    return float(np.linalg.norm(as_embedding(vector).astype(np.float64)))


def validate_embedding(vector) -> bool:
    """
    An embedding is usable when it is non-empty, finite and has
    L2 magnitude strictly above MIN_EMBEDDING_MAGNITUDE.
    """
    emb = as_embedding(vector)
    if emb.size == 0 or not np.all(np.isfinite(emb)):
        return False
    return embedding_magnitude(emb) > config.MIN_EMBEDDING_MAGNITUDE


def cosine_distance(a, b) -> float:
    """
    1 - cosine similarity, computed in float64.
    Returns inf when either vector has zero norm or the dimensions differ.
    """
    va = as_embedding(a).astype(np.float64)
    vb = as_embedding(b).astype(np.float64)
    if va.shape != vb.shape:
        return float("inf")
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0 or nb == 0:
        return float("inf")
    similarity = float(np.dot(va / na, vb / nb))
    # Rounding can push |similarity| slightly past 1
    return max(0.0, 1.0 - min(1.0, similarity))


def average_embeddings(embeddings: Sequence) -> Optional[np.ndarray]:
    """
    Equal-weight mean of same-dimension embeddings.
    Summation happens in float64 over a sorted stack so the result does not
    depend on input order. Returns None for an empty or ragged input.
    """
    vectors = [as_embedding(e) for e in embeddings]
    if not vectors:
        return None
    dim = vectors[0].shape[0]
    if dim == 0 or any(v.shape[0] != dim for v in vectors):
        logger.warning("Cannot average embeddings of mixed dimensionality")
        return None
    stack = np.sort(np.stack(vectors).astype(np.float64), axis=0)
    return (stack.sum(axis=0) / len(vectors)).astype(np.float32)
