import copy
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import faiss
import numpy as np

from live_diarization import config
from live_diarization.components.speaker_utils import as_embedding, cosine_distance, validate_embedding
from live_diarization.dtos import MatchResult
from live_diarization.errors import InvalidEmbeddingError, ProcessingError, SpeakerNotFoundError

logger = logging.getLogger("SpeakerDB")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_speaker_id() -> str:
    return str(uuid.uuid4())


def speaker_color(index: int) -> str:
    """Deterministic display color for the Nth profile."""
    return config.SPEAKER_COLORS[index % len(config.SPEAKER_COLORS)]


@dataclass(frozen=True)
class RawEmbedding:
    """One observed embedding kept in a profile's history."""
    segment_id: str
    embedding: np.ndarray
    timestamp: datetime = field(default_factory=utc_now)


class SpeakerProfile:
    """
    Identity record for one speaker (voice fingerprint).

    Invariants:
    - raw_embeddings never holds more than MAX_RAW_EMBEDDINGS entries (oldest evicted).
    - current_embedding keeps the dimensionality it was created with.
    - Embeddings with magnitude <= MIN_EMBEDDING_MAGNITUDE are never merged in.

    Update rule: current_embedding is the arithmetic mean of the retained raw history.
    """

    def __init__(
        self,
        id: str,
        name: str,
        current_embedding,
        duration: float = 0.0,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        update_count: int = 1,
        display_color: str = config.SPEAKER_COLORS[0],
        raw_embeddings: Iterable[RawEmbedding] = (),
    ):
        now = utc_now()
        self.id = id
        self.name = name
        self.current_embedding = as_embedding(current_embedding)
        self.duration = float(duration)
        self.created_at = created_at or now
        self.updated_at = updated_at or self.created_at
        self.update_count = update_count
        self.display_color = display_color
        self.raw_embeddings: deque = deque(maxlen=config.MAX_RAW_EMBEDDINGS)
        for raw in raw_embeddings:
            self.raw_embeddings.append(raw)

    @property
    def dimension(self) -> int:
        return int(self.current_embedding.shape[0])

    def copy(self) -> "SpeakerProfile":
        return copy.deepcopy(self)

    def add_raw_embedding(self, raw: RawEmbedding) -> bool:
        """
        FIFO insert. Returns False (and changes nothing) for noise or a
        dimension mismatch.
        """
        emb = as_embedding(raw.embedding)
        if not validate_embedding(emb) or emb.shape[0] != self.dimension:
            return False
        # deque(maxlen) evicts the oldest entry on overflow
        self.raw_embeddings.append(RawEmbedding(raw.segment_id, emb, raw.timestamp))
        self.recalculate_main_embedding()
        return True

    def recalculate_main_embedding(self):
        vectors = [r.embedding for r in self.raw_embeddings if r.embedding.shape[0] == self.dimension]
        if not vectors:
            return
        self.current_embedding = np.mean(np.stack(vectors).astype(np.float64), axis=0).astype(np.float32)
        self.updated_at = utc_now()

    def update_main_embedding(self, duration: float, embedding, segment_id: str) -> bool:
        emb = as_embedding(embedding)
        if not self.add_raw_embedding(RawEmbedding(segment_id, emb)):
            return False
        self.duration += float(duration)
        self.updated_at = utc_now()
        self.update_count += 1
        return True

    def merge_with(self, other: "SpeakerProfile", keep_name: Optional[str] = None):
        """
        Absorb another profile: keep the MAX_RAW_EMBEDDINGS most recent raw
        embeddings of both, sum durations and update counts.
        """
        combined = list(self.raw_embeddings) + list(other.raw_embeddings)
        if len(combined) > config.MAX_RAW_EMBEDDINGS:
            combined = sorted(combined, key=lambda r: r.timestamp, reverse=True)[: config.MAX_RAW_EMBEDDINGS]
        # Oldest first so future FIFO eviction removes the right entries
        combined.sort(key=lambda r: r.timestamp)

        self.raw_embeddings = deque(combined, maxlen=config.MAX_RAW_EMBEDDINGS)
        self.duration += other.duration
        if keep_name is not None:
            self.name = keep_name
        self.recalculate_main_embedding()
        self.updated_at = utc_now()
        self.update_count += other.update_count

    def reseed(self, embedding, segment_id: str):
        """Replace the embedding outright and restart the raw history from it."""
        self.current_embedding = as_embedding(embedding)
        self.raw_embeddings = deque(
            [RawEmbedding(segment_id, self.current_embedding.copy())],
            maxlen=config.MAX_RAW_EMBEDDINGS,
        )
        self.updated_at = utc_now()

    def __eq__(self, other):
        return isinstance(other, SpeakerProfile) and other.id == self.id

    def __hash__(self):
        return hash(self.id)

    def __repr__(self):
        return (
            f"SpeakerProfile(id={self.id!r}, name={self.name!r}, dim={self.dimension}, "
            f"duration={self.duration:.2f}, updates={self.update_count}, raw={len(self.raw_embeddings)})"
        )


class SpeakerIdentityStore:
    """
    Authoritative in-memory table of known speaker profiles.

    Responsibility:
    - Owns every SpeakerProfile; callers only ever receive copies.
    - Nearest-neighbour matching over current embeddings (FAISS inner product
      on L2-normalised vectors, one index per embedding dimension).
    - Thread-safe: API handlers and the pipeline loop may both call in.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self._profiles: Dict[str, SpeakerProfile] = {}
        # dim -> (index, id_map)
        self._indexes: Dict[int, Tuple[faiss.IndexFlatIP, List[str]]] = {}

    def __len__(self):
        with self.lock:
            return len(self._profiles)

    def __contains__(self, speaker_id: str):
        with self.lock:
            return speaker_id in self._profiles

    # --- Reads ---

    def get(self, speaker_id: str) -> SpeakerProfile:
        with self.lock:
            return self._require(speaker_id).copy()

    def lookup(self, speaker_id: str) -> Optional[SpeakerProfile]:
        with self.lock:
            profile = self._profiles.get(speaker_id)
            return profile.copy() if profile else None

    def profiles(self) -> List[SpeakerProfile]:
        with self.lock:
            return [p.copy() for p in sorted(self._profiles.values(), key=lambda p: p.created_at)]

    def speaker_database(self) -> Dict[str, List[float]]:
        """Debug view: id -> current embedding."""
        with self.lock:
            return {sid: p.current_embedding.tolist() for sid, p in self._profiles.items()}

    # --- Mutations ---

    def create(
        self,
        embedding,
        name: Optional[str] = None,
        duration: float = 0.0,
        segment_id: Optional[str] = None,
        speaker_id: Optional[str] = None,
    ) -> SpeakerProfile:
        emb = self._validated(embedding)
        with self.lock:
            count = len(self._profiles)
            sid = speaker_id or new_speaker_id()
            if sid in self._profiles:
                raise ProcessingError(f"Speaker {sid} already exists")
            profile = SpeakerProfile(
                id=sid,
                name=name or f"{config.SPEAKER_NAME_PREFIX}{count + 1}",
                current_embedding=emb,
                duration=duration,
                display_color=speaker_color(count),
            )
            profile.raw_embeddings.append(RawEmbedding(segment_id or sid, emb.copy(), profile.created_at))
            self._profiles[sid] = profile
            self._rebuild_index()
            logger.info(f"Created speaker {profile.name} ({sid}), dim={profile.dimension}")
            return profile.copy()

    def upsert(self, speaker_id: str, embedding, duration: float = 0.0, name: Optional[str] = None) -> SpeakerProfile:
        """
        Direct insert/replace (hydration, enrollment). Idempotent: repeating
        a call with identical arguments leaves the profile untouched.
        """
        emb = self._validated(embedding)
        with self.lock:
            existing = self._profiles.get(speaker_id)
            if existing is None:
                count = len(self._profiles)
                profile = SpeakerProfile(
                    id=speaker_id,
                    name=name or speaker_id,
                    current_embedding=emb,
                    duration=duration,
                    display_color=speaker_color(count),
                )
                profile.raw_embeddings.append(RawEmbedding(speaker_id, emb.copy(), profile.created_at))
                self._profiles[speaker_id] = profile
                self._rebuild_index()
                return profile.copy()

            if existing.dimension != emb.shape[0]:
                raise InvalidEmbeddingError(
                    f"Speaker {speaker_id} has {existing.dimension}-dim embeddings, got {emb.shape[0]}"
                )
            unchanged = (
                np.array_equal(existing.current_embedding, emb)
                and existing.duration == float(duration)
                and (name is None or name == existing.name)
            )
            if unchanged:
                return existing.copy()

            existing.reseed(emb, speaker_id)
            existing.duration = float(duration)
            if name is not None:
                existing.name = name
            self._rebuild_index()
            return existing.copy()

    def update(self, speaker_id: str, embedding, segment_id: str, duration_delta: float) -> SpeakerProfile:
        """
        Fold one observed segment embedding into a profile (mean of retained history).
        Raises InvalidEmbeddingError without touching the profile for noise.
        """
        emb = as_embedding(embedding)
        with self.lock:
            profile = self._require(speaker_id)
            if not validate_embedding(emb):
                raise InvalidEmbeddingError(
                    f"Rejected embedding for {speaker_id}: magnitude <= {config.MIN_EMBEDDING_MAGNITUDE} or non-finite"
                )
            if emb.shape[0] != profile.dimension:
                raise InvalidEmbeddingError(
                    f"Speaker {speaker_id} has {profile.dimension}-dim embeddings, got {emb.shape[0]}"
                )
            profile.update_main_embedding(duration_delta, emb, segment_id)
            self._rebuild_index()
            return profile.copy()

    def reseed(self, speaker_id: str, embedding, segment_id: str = "enhancement", duration_delta: float = 0.0) -> SpeakerProfile:
        """Replace a profile embedding outright (enrollment enhancement)."""
        emb = self._validated(embedding)
        with self.lock:
            profile = self._require(speaker_id)
            if emb.shape[0] != profile.dimension:
                raise InvalidEmbeddingError(
                    f"Speaker {speaker_id} has {profile.dimension}-dim embeddings, got {emb.shape[0]}"
                )
            profile.reseed(emb, segment_id)
            profile.duration += float(duration_delta)
            profile.update_count += 1
            self._rebuild_index()
            return profile.copy()

    def merge(self, keep_id: str, absorb_id: str, keep_name: Optional[str] = None) -> SpeakerProfile:
        """
        Merge absorb_id into keep_id. absorb_id disappears from the store.
        """
        if keep_id == absorb_id:
            raise ProcessingError("Cannot merge a speaker with itself")
        with self.lock:
            keep = self._require(keep_id)
            absorb = self._require(absorb_id)
            if keep.dimension != absorb.dimension:
                raise InvalidEmbeddingError(
                    f"Cannot merge {keep.dimension}-dim and {absorb.dimension}-dim speakers"
                )
            keep.merge_with(absorb, keep_name=keep_name)
            del self._profiles[absorb_id]
            self._rebuild_index()
            logger.info(f"Merged speaker {absorb_id} into {keep_id} ({len(keep.raw_embeddings)} raw embeddings)")
            return keep.copy()

    def rename(self, speaker_id: str, new_name: str) -> SpeakerProfile:
        with self.lock:
            profile = self._require(speaker_id)
            profile.name = new_name
            profile.updated_at = utc_now()
            return profile.copy()

    def restore(self, profile: SpeakerProfile) -> SpeakerProfile:
        """Insert a fully-formed profile (import). Replaces any profile with the same id."""
        if not validate_embedding(profile.current_embedding):
            raise InvalidEmbeddingError(f"Profile {profile.id} has no usable embedding")
        with self.lock:
            self._profiles[profile.id] = profile.copy()
            self._rebuild_index()
            return profile.copy()

    def clear(self):
        with self.lock:
            self._profiles.clear()
            self._rebuild_index()

    # --- Matching ---

    def nearest(self, embedding) -> MatchResult:
        """
        Closest profile by cosine distance regardless of threshold.
        MatchResult(None, inf) when there is nothing comparable.
        """
        query = self._validated(embedding)
        with self.lock:
            entry = self._indexes.get(query.shape[0])
            if entry is None or entry[0].ntotal == 0:
                return MatchResult(None, float("inf"))
            index, id_map = entry

            q = np.ascontiguousarray(query.reshape(1, -1), dtype=np.float32)
            faiss.normalize_L2(q)
            _, I = index.search(q, 1)
            idx = int(I[0][0])
            if idx < 0 or idx >= len(id_map):
                return MatchResult(None, float("inf"))

            speaker_id = id_map[idx]
            distance = cosine_distance(query, self._profiles[speaker_id].current_embedding)
            return MatchResult(speaker_id, distance)

    def match(self, embedding, max_distance: float) -> MatchResult:
        """
        Nearest profile if its cosine distance is <= max_distance,
        otherwise MatchResult(None, distance).
        """
        best = self.nearest(embedding)
        if best.speaker_id is not None and best.distance <= max_distance:
            return best
        return MatchResult(None, best.distance)

    # --- Internal ---

    def _require(self, speaker_id: str) -> SpeakerProfile:
        """Assumes Lock is held."""
        profile = self._profiles.get(speaker_id)
        if profile is None:
            raise SpeakerNotFoundError(speaker_id)
        return profile

    @staticmethod
    def _validated(embedding) -> np.ndarray:
        emb = as_embedding(embedding)
        if not validate_embedding(emb):
            raise InvalidEmbeddingError(
                f"Embedding rejected: magnitude <= {config.MIN_EMBEDDING_MAGNITUDE} or non-finite"
            )
        return emb

    def _rebuild_index(self):
        """
        Internal: Rebuilds FAISS indexes from current profile embeddings.
        Assumes Lock is held.
        """
        grouped: Dict[int, List[Tuple[str, np.ndarray]]] = {}
        # Sort by id for a consistent id_map order
        for sid, profile in sorted(self._profiles.items()):
            if validate_embedding(profile.current_embedding):
                grouped.setdefault(profile.dimension, []).append((sid, profile.current_embedding))

        self._indexes = {}
        for dim, entries in grouped.items():
            matrix = np.ascontiguousarray(np.stack([e for _, e in entries]), dtype=np.float32)
            faiss.normalize_L2(matrix)
            index = faiss.IndexFlatIP(dim)
            index.add(matrix)
            self._indexes[dim] = (index, [sid for sid, _ in entries])

        logger.debug(f"Rebuilt index with {len(self._profiles)} profiles across {len(self._indexes)} dimension(s).")
