import unittest
import numpy as np
import sys
import os

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))

from live_diarization.config import DiarizerConfig
from live_diarization.dtos import TimedSpeakerSegment
from live_diarization.services.identity_service import UNKNOWN_SPEAKER, IdentityMatcher, coalesce_segments
from live_diarization.speaker_db import SpeakerIdentityStore


def unit(i, dim=8):
    v = np.zeros(dim, dtype=np.float32)
    v[i] = 1.0
    return v


def seg(emb, start, end, speaker="local_0"):
    return TimedSpeakerSegment(speaker, emb, start, end)


class TestAssign(unittest.TestCase):

    def setUp(self):
        self.store = SpeakerIdentityStore()
        self.matcher = IdentityMatcher(self.store, DiarizerConfig())

    def test_unmatched_long_segment_creates_profile(self):
        out = self.matcher.assign(seg(unit(0), 0.0, 1.5))
        self.assertEqual(len(self.store), 1)
        profile = self.store.profiles()[0]
        self.assertEqual(out.speaker_id, profile.id)
        self.assertEqual(profile.name, "Speaker 1")
        self.assertAlmostEqual(profile.duration, 1.5)

    def test_short_unmatched_segment_is_unknown(self):
        out = self.matcher.assign(seg(unit(0), 0.0, 0.5))
        self.assertEqual(out.speaker_id, UNKNOWN_SPEAKER)
        self.assertEqual(len(self.store), 0)

    def test_match_learns_only_from_long_segments(self):
        first = self.matcher.assign(seg(unit(0), 0.0, 3.0))
        probe = unit(0) + 0.2 * unit(1)

        short = self.matcher.assign(seg(probe, 3.0, 4.0))
        self.assertEqual(short.speaker_id, first.speaker_id)
        self.assertEqual(self.store.get(first.speaker_id).update_count, 1)

        long = self.matcher.assign(seg(probe, 4.0, 6.5))
        self.assertEqual(long.speaker_id, first.speaker_id)
        profile = self.store.get(first.speaker_id)
        self.assertEqual(profile.update_count, 2)
        self.assertEqual(len(profile.raw_embeddings), 2)

    def test_learning_disabled(self):
        first = self.matcher.assign(seg(unit(0), 0.0, 3.0))
        self.matcher.assign(seg(unit(0), 3.0, 9.0), learn=False)
        self.assertEqual(self.store.get(first.speaker_id).update_count, 1)

    def test_invalid_embedding_passes_through(self):
        original = seg(np.zeros(8), 0.0, 3.0, speaker="local_9")
        self.assertIs(self.matcher.assign(original), original)
        self.assertEqual(len(self.store), 0)

    def test_expected_speaker_count_forces_nearest(self):
        matcher = IdentityMatcher(self.store, DiarizerConfig(num_clusters=1))
        first = matcher.assign(seg(unit(0), 0.0, 2.0))
        second = matcher.assign(seg(unit(1), 2.0, 4.0))
        self.assertEqual(second.speaker_id, first.speaker_id)
        self.assertEqual(len(self.store), 1)

    def test_attribute_orders_and_coalesces(self):
        segments = [
            seg(unit(0), 1.2, 3.0),
            seg(unit(0), 0.0, 1.0),
            seg(unit(1), 4.0, 6.0, speaker="local_1"),
        ]
        out = self.matcher.attribute(segments)
        self.assertEqual(len(out), 2)
        self.assertEqual((out[0].start_time_seconds, out[0].end_time_seconds), (0.0, 3.0))
        self.assertNotEqual(out[0].speaker_id, out[1].speaker_id)


class TestCoalesce(unittest.TestCase):

    def test_gap_rule(self):
        a = seg(unit(0), 0.0, 1.0, "s")
        b = seg(unit(0), 1.4, 2.0, "s")
        c = seg(unit(0), 2.6, 3.0, "s")
        out = coalesce_segments([a, b, c], min_gap=0.5)
        self.assertEqual(len(out), 2)
        self.assertEqual(out[0].end_time_seconds, 2.0)

    def test_different_speakers_never_join(self):
        out = coalesce_segments([seg(unit(0), 0, 1, "a"), seg(unit(0), 1, 2, "b")], min_gap=0.5)
        self.assertEqual(len(out), 2)


if __name__ == '__main__':
    unittest.main()
