import logging
from dataclasses import replace
from typing import Iterable, List

from live_diarization.components.speaker_utils import validate_embedding
from live_diarization.config import DiarizerConfig
from live_diarization.dtos import TimedSpeakerSegment
from live_diarization.speaker_db import SpeakerIdentityStore

logger = logging.getLogger("IdentityMatcher")

UNKNOWN_SPEAKER = "unknown"


class IdentityMatcher:
    """
    Maps extractor-local segment labels onto global speaker profiles.

    Guarantees:
    - Segments with unusable embeddings pass through untouched.
    - Profiles only learn from segments >= min_embedding_update_duration.
    - New profiles only come from segments >= min_speech_duration.
    """

    def __init__(self, store: SpeakerIdentityStore, diarizer_config: DiarizerConfig):
        self.store = store
        self.config = diarizer_config
        self._segment_seq = 0

    def assign(self, segment: TimedSpeakerSegment, learn: bool = True) -> TimedSpeakerSegment:
        if not validate_embedding(segment.embedding):
            logger.debug(f"Skipping segment {segment.start_time_seconds:.2f}s with unusable embedding")
            return segment

        duration = segment.duration_seconds
        segment_id = self._next_segment_id(segment)
        match = self.store.match(segment.embedding, self.config.max_match_distance)

        speaker_id = match.speaker_id
        if speaker_id is None and 0 < self.config.num_clusters <= len(self.store):
            # Expected speaker count reached: nearest profile wins
            speaker_id = self.store.nearest(segment.embedding).speaker_id

        if speaker_id is not None:
            if learn and duration >= self.config.min_embedding_update_duration:
                self.store.update(speaker_id, segment.embedding, segment_id, duration)
            return replace(segment, speaker_id=speaker_id)

        if duration >= self.config.min_speech_duration:
            profile = self.store.create(segment.embedding, duration=duration, segment_id=segment_id)
            logger.info(
                f"New speaker {profile.name} from {segment.start_time_seconds:.2f}-{segment.end_time_seconds:.2f}s "
                f"(nearest distance {match.distance:.3f})"
            )
            return replace(segment, speaker_id=profile.id)

        return replace(segment, speaker_id=UNKNOWN_SPEAKER)

    def attribute(self, segments: Iterable[TimedSpeakerSegment], learn: bool = True) -> List[TimedSpeakerSegment]:
        """Assign every segment in time order, then join same-speaker neighbours."""
        ordered = sorted(segments, key=lambda s: s.start_time_seconds)
        return coalesce_segments([self.assign(s, learn) for s in ordered], self.config.min_silence_gap)

    def _next_segment_id(self, segment: TimedSpeakerSegment) -> str:
        self._segment_seq += 1
        return f"seg{self._segment_seq}@{segment.start_time_seconds:.2f}"


def coalesce_segments(segments: List[TimedSpeakerSegment], min_gap: float) -> List[TimedSpeakerSegment]:
    """
    Join consecutive segments of the same speaker separated by less than min_gap.
    The joined segment keeps the embedding of its longer part.
    """
    out: List[TimedSpeakerSegment] = []
    for seg in segments:
        if out:
            prev = out[-1]
            gap = seg.start_time_seconds - prev.end_time_seconds
            if prev.speaker_id == seg.speaker_id and gap < min_gap:
                longer = prev if prev.duration_seconds >= seg.duration_seconds else seg
                out[-1] = TimedSpeakerSegment(
                    speaker_id=prev.speaker_id,
                    embedding=longer.embedding,
                    start_time_seconds=prev.start_time_seconds,
                    end_time_seconds=max(prev.end_time_seconds, seg.end_time_seconds),
                    quality_score=max(prev.quality_score, seg.quality_score),
                )
                continue
        out.append(seg)
    return out
