import asyncio
import threading
import unittest
import numpy as np
import sys
import os

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from fakes import FakeExtractor, silence, tone, voice_embedding
from live_diarization.config import DiarizerConfig, StreamingConfig
from live_diarization.dtos import KnownProfile
from live_diarization.errors import ModelLoadError, NotInitializedError, ProcessingError
from live_diarization.state_machine import PipelineState
from live_diarization.streaming_diarizer import StreamingDiarizer

SR = 16000


def drain(q):
    events = []
    while not q.empty():
        events.append(q.get_nowait())
    return events


def of_type(events, kind):
    return [e for e in events if e["type"] == kind]


async def wait_live_idle(diarizer):
    while diarizer._live_task is not None:
        await diarizer._live_task


class PipelineTestCase(unittest.IsolatedAsyncioTestCase):

    def make(self, extractor=None, diarizer_config=None, **streaming):
        self.extractor = extractor or FakeExtractor()
        diarizer = StreamingDiarizer(
            self.extractor,
            diarizer_config=diarizer_config,
            streaming_config=StreamingConfig(**streaming),
        )
        self.addAsyncCleanup(diarizer.shutdown)
        return diarizer


class TestLifecycle(PipelineTestCase):

    async def test_requires_initialize(self):
        d = self.make()
        with self.assertRaises(NotInitializedError):
            await d.append_audio(tone(1.0, 1))
        with self.assertRaises(NotInitializedError):
            await d.finish()
        with self.assertRaises(NotInitializedError):
            await d.enroll(tone(2.0, 1), "x")

    async def test_load_failure_is_permanent(self):
        extractor = FakeExtractor()
        extractor.fail_load = True
        d = self.make(extractor)
        with self.assertRaises(ModelLoadError):
            await d.initialize()
        extractor.fail_load = False
        with self.assertRaises(ModelLoadError):
            await d.initialize()
        self.assertEqual(d.state.state, PipelineState.UNINITIALIZED)
        with self.assertRaises(NotInitializedError):
            await d.append_audio(tone(1.0, 1))

    async def test_state_walk(self):
        d = self.make()
        await d.initialize()
        self.assertEqual(d.state.state, PipelineState.INITIALIZED)
        await d.append_audio(tone(2.0, 1))
        self.assertEqual(d.state.state, PipelineState.STREAMING)
        result = await d.finish()
        self.assertIsNotNone(result)
        self.assertEqual(d.state.state, PipelineState.IDLE)
        await d.append_audio(tone(2.0, 1))
        self.assertEqual(d.state.state, PipelineState.STREAMING)
        self.assertEqual(
            d.state.history,
            [PipelineState.UNINITIALIZED, PipelineState.INITIALIZED, PipelineState.STREAMING,
             PipelineState.FINALIZING, PipelineState.IDLE, PipelineState.STREAMING],
        )

    async def test_disabled_pipeline_is_inert(self):
        d = self.make(enabled=False)
        await d.append_audio(tone(1.0, 1))
        self.assertIsNone(await d.finish())
        self.assertEqual(self.extractor.calls, [])

    async def test_finish_without_audio(self):
        d = self.make()
        await d.initialize()
        self.assertIsNone(await d.finish())
        self.assertEqual(d.state.state, PipelineState.IDLE)
        self.assertEqual(self.extractor.calls, [])

    async def test_reset_discards_recording(self):
        d = self.make()
        await d.initialize()
        await d.append_audio(tone(3.0, 1))
        await d.reset()
        self.assertEqual(d.accumulator.full_samples, 0)
        self.assertEqual(d.state.state, PipelineState.IDLE)


class TestFinalPass(PipelineTestCase):

    async def test_final_result_attributes_global_speakers(self):
        d = self.make()
        await d.initialize()
        for chunk in (tone(2.0, 1), tone(3.0, 2), tone(2.0, 1)):
            await d.append_audio(chunk)
        result = await d.finish()

        self.assertEqual(len(result.segments), 3)
        self.assertEqual(len(result.speaker_ids()), 2)
        self.assertEqual(result.segments[0].speaker_id, result.segments[2].speaker_id)
        self.assertEqual(len(d.store), 2)
        self.assertIsNone(result.speaker_database)
        self.assertIs(d.last_result, result)
        self.assertEqual(d.accumulator.full_samples, 0)

    async def test_store_persists_across_recordings(self):
        d = self.make()
        await d.initialize()
        await d.append_audio(tone(3.0, 5))
        first = await d.finish()
        await d.append_audio(tone(3.0, 5))
        second = await d.finish()
        self.assertEqual(first.segments[0].speaker_id, second.segments[0].speaker_id)
        self.assertEqual(len(d.store), 1)

    async def test_debug_mode_attaches_database_and_timings(self):
        d = self.make(diarizer_config=DiarizerConfig(debug_mode=True))
        await d.initialize()
        await d.append_audio(tone(2.0, 3))
        result = await d.finish()
        self.assertEqual(set(result.speaker_database), {p.id for p in d.speakers()})
        self.assertIsNotNone(result.timings)

    async def test_final_failure_keeps_recording_for_retry(self):
        d = self.make()
        await d.initialize()
        await d.append_audio(tone(3.0, 1))
        self.extractor.fail_segment = True
        self.assertIsNone(await d.finish())
        self.assertIsNotNone(d.last_error)
        self.assertEqual(d.state.state, PipelineState.IDLE)
        self.assertEqual(d.accumulator.full_samples, 3 * SR)

        self.extractor.fail_segment = False
        result = await d.finish()
        self.assertEqual(len(result.segments), 1)
        self.assertEqual(d.accumulator.full_samples, 0)

    async def test_resamples_non_native_input(self):
        d = self.make()
        await d.initialize()
        for _ in range(4):
            await d.append_audio(tone(0.5, 2, sample_rate=48000), sample_rate=48000)
        result = await d.finish()
        self.assertAlmostEqual(self.extractor.calls[-1] / SR, 2.0, delta=0.05)
        self.assertEqual(len(result.speaker_ids()), 1)


class TestLiveProcessing(PipelineTestCase):

    async def test_live_windows_are_offset_and_attributed(self):
        d = self.make(live_processing_enabled=True, processing_window_seconds=2.0, adaptive_window_enabled=False)
        await d.initialize()
        q = d.bus.subscribe("test")

        await d.append_audio(tone(2.0, 3))
        await wait_live_idle(d)
        await d.append_audio(tone(2.0, 5))
        await wait_live_idle(d)

        updates = of_type(drain(q), "incremental_result")
        self.assertEqual([u["window_index"] for u in updates], [0, 1])
        self.assertEqual(updates[1]["segments"][0]["start"], 2.0)
        self.assertEqual(updates[1]["segments"][0]["end"], 4.0)
        self.assertEqual(len(d.live_result.speaker_ids()), 2)
        self.assertEqual(len(d.store), 2)
        self.assertEqual(d.accumulator.live_samples, 0)

    async def test_window_failure_does_not_stop_streaming(self):
        d = self.make(live_processing_enabled=True, processing_window_seconds=2.0, adaptive_window_enabled=False)
        await d.initialize()
        q = d.bus.subscribe("test")
        self.extractor.fail_segment = True
        await d.append_audio(tone(2.0, 3))
        await wait_live_idle(d)
        self.assertIsNotNone(d.last_error)
        self.assertEqual(d.state.state, PipelineState.STREAMING)
        self.assertEqual(len(of_type(drain(q), "window_error")), 1)

        self.extractor.fail_segment = False
        await d.append_audio(tone(2.0, 3))
        await wait_live_idle(d)
        self.assertEqual(len(of_type(drain(q), "incremental_result")), 1)

    async def test_adaptive_window_shrinks_on_fast_inference(self):
        d = self.make(live_processing_enabled=True, processing_window_seconds=3.0)
        await d.initialize()
        await d.append_audio(tone(3.0, 1))
        await wait_live_idle(d)
        self.assertEqual(d.window.window_seconds, 2.5)

    async def test_pending_window_flushed_before_final_pass(self):
        d = self.make(live_processing_enabled=True, processing_window_seconds=5.0)
        await d.initialize()
        q = d.bus.subscribe("test")
        for _ in range(6):
            await d.append_audio(tone(0.5, 2))
        self.assertEqual(self.extractor.calls, [])

        result = await d.finish()
        self.assertEqual(self.extractor.calls, [3 * SR, 3 * SR])
        self.assertEqual(d.accumulator.full_samples, 0)
        self.assertEqual(len(of_type(drain(q), "incremental_result")), 1)
        self.assertEqual(len(result.segments), 1)

    async def test_partial_window_discarded_when_live_disabled(self):
        d = self.make(live_processing_enabled=False)
        await d.initialize()
        await d.append_audio(tone(3.0, 2))
        await d.finish()
        self.assertEqual(self.extractor.calls, [3 * SR])


class TestBackpressure(PipelineTestCase):

    async def test_slow_inference_drops_and_pauses_once(self):
        gate = threading.Event()
        self.addCleanup(gate.set)
        d = self.make(
            FakeExtractor(gate=gate),
            live_processing_enabled=True,
            processing_window_seconds=10.0,
            adaptive_window_enabled=False,
            max_live_buffer_seconds=20.0,
        )
        await d.initialize()
        q = d.bus.subscribe("test")

        for _ in range(25):
            await d.append_audio(tone(1.0, 1))
            await asyncio.sleep(0)
            self.assertLessEqual(d.accumulator.live_samples, 20 * SR)

        events = drain(q)
        drops = of_type(events, "backpressure_drop")
        self.assertGreaterEqual(len(drops), 1)
        self.assertEqual(drops[0]["consecutive_drops"], 3)
        self.assertEqual(len(of_type(events, "adaptive_pause")), 1)
        self.assertEqual(d.rate.pause_count, 1)
        self.assertEqual(d.accumulator.full_samples, 25 * SR)

        gate.set()
        result = await d.finish()
        self.assertIsNotNone(result)
        self.assertEqual(self.extractor.calls[-1], 25 * SR)

    async def test_terminal_backpressure_published_once(self):
        gate = threading.Event()
        self.addCleanup(gate.set)
        d = self.make(
            FakeExtractor(gate=gate),
            live_processing_enabled=True,
            processing_window_seconds=1.0,
            max_live_buffer_seconds=6.0,
            adaptive_rate_enabled=False,
            terminal_drop_threshold=5,
        )
        await d.initialize()
        q = d.bus.subscribe("test")
        for _ in range(15):
            await d.append_audio(tone(1.0, 1))
            await asyncio.sleep(0)
        self.assertEqual(len(of_type(drain(q), "terminal_backpressure")), 1)
        gate.set()

    async def test_resume_after_cooldown_nudges_window(self):
        now = [0.0]
        gate = threading.Event()
        self.addCleanup(gate.set)
        extractor = FakeExtractor(gate=gate)
        d = StreamingDiarizer(
            extractor,
            streaming_config=StreamingConfig(
                live_processing_enabled=True,
                processing_window_seconds=2.0,
                max_live_buffer_seconds=6.0,
            ),
            clock=lambda: now[0],
        )
        self.addAsyncCleanup(d.shutdown)
        await d.initialize()
        q = d.bus.subscribe("test")

        for _ in range(8):
            await d.append_audio(tone(1.0, 1))
            await asyncio.sleep(0)
        self.assertTrue(d.rate.paused)

        gate.set()
        await wait_live_idle(d)
        now[0] = 20.0
        # Empty capture buffer: triggers the cooldown check without another drop
        await d.append_audio(np.zeros(0, dtype=np.float32))
        resumed = of_type(drain(q), "adaptive_resume")
        self.assertEqual(len(resumed), 1)
        self.assertFalse(d.rate.paused)
        self.assertEqual(resumed[0]["window_seconds"], d.window.window_seconds)
        # Backlog is large enough for the next live window right away
        self.assertIsNotNone(d._live_task)
        await wait_live_idle(d)

    def clocked(self, now, gate, **streaming):
        d = StreamingDiarizer(
            FakeExtractor(gate=gate),
            streaming_config=StreamingConfig(live_processing_enabled=True, **streaming),
            clock=lambda: now[0],
        )
        self.addAsyncCleanup(d.shutdown)
        self.addCleanup(gate.set)
        return d

    async def test_resume_nudges_fixed_window(self):
        now = [0.0]
        gate = threading.Event()
        d = self.clocked(
            now, gate,
            processing_window_seconds=2.0,
            adaptive_window_enabled=False,
            max_live_buffer_seconds=6.0,
        )
        await d.initialize()

        for _ in range(8):
            await d.append_audio(tone(1.0, 1))
            await asyncio.sleep(0)
        self.assertTrue(d.rate.paused)

        gate.set()
        await wait_live_idle(d)
        self.assertEqual(d.window.window_seconds, 2.0)
        now[0] = 20.0
        await d.append_audio(np.zeros(0, dtype=np.float32))
        self.assertFalse(d.rate.paused)
        self.assertEqual(d.window.window_seconds, 2.5)
        await wait_live_idle(d)

    async def test_drop_notices_are_throttled(self):
        now = [100.0]
        gate = threading.Event()
        d = self.clocked(
            now, gate,
            processing_window_seconds=10.0,
            adaptive_window_enabled=False,
            adaptive_rate_enabled=False,
            max_live_buffer_seconds=20.0,
        )
        await d.initialize()
        q = d.bus.subscribe("test")

        # Drops 1-5 all land at the same instant
        for _ in range(25):
            await d.append_audio(tone(1.0, 1))
            await asyncio.sleep(0)
        self.assertEqual(d.accumulator.consecutive_drops, 5)
        notices = of_type(drain(q), "backpressure_drop")
        self.assertEqual([n["consecutive_drops"] for n in notices], [3])

        now[0] = 105.0
        await d.append_audio(tone(1.0, 1))
        self.assertEqual(of_type(drain(q), "backpressure_drop"), [])

        now[0] = 110.5
        await d.append_audio(tone(1.0, 1))
        notices = of_type(drain(q), "backpressure_drop")
        self.assertEqual([n["consecutive_drops"] for n in notices], [7])
        gate.set()

    async def test_drop_notices_can_be_silenced(self):
        now = [0.0]
        gate = threading.Event()
        d = self.clocked(
            now, gate,
            processing_window_seconds=10.0,
            adaptive_window_enabled=False,
            adaptive_rate_enabled=False,
            max_live_buffer_seconds=20.0,
            show_backpressure_alerts=False,
        )
        await d.initialize()
        q = d.bus.subscribe("test")
        for _ in range(25):
            await d.append_audio(tone(1.0, 1))
            await asyncio.sleep(0)
        self.assertEqual(d.accumulator.consecutive_drops, 5)
        self.assertEqual(of_type(drain(q), "backpressure_drop"), [])
        gate.set()

    async def test_resampler_tail_drop_is_reported(self):
        d = self.make(
            live_processing_enabled=True,
            processing_window_seconds=6.0,
            adaptive_window_enabled=False,
            adaptive_rate_enabled=False,
            max_live_buffer_seconds=6.0,
            terminal_drop_threshold=1,
        )
        await d.initialize()
        q = d.bus.subscribe("test")
        await d.append_audio(tone(5.5, 1))
        self.assertIsNone(d._live_task)

        d.resampler.flush = lambda: tone(1.0, 1)
        result = await d.finish()
        terminal = of_type(drain(q), "terminal_backpressure")
        self.assertEqual(len(terminal), 1)
        self.assertEqual(terminal[0]["consecutive_drops"], 1)
        self.assertIsNotNone(result)
        self.assertEqual(self.extractor.calls, [6 * SR, int(6.5 * SR)])


class TestShutdown(unittest.IsolatedAsyncioTestCase):

    async def test_shutdown_does_not_block_loop(self):
        gate = threading.Event()
        self.addCleanup(gate.set)
        d = StreamingDiarizer(FakeExtractor(gate=gate))
        await d.initialize()

        queued = asyncio.ensure_future(d.executor.run(d.extractor.segment, tone(2.0, 1), SR))
        await asyncio.sleep(0)
        closing = asyncio.ensure_future(d.shutdown())
        await asyncio.sleep(0.05)
        self.assertFalse(closing.done())

        gate.set()
        await closing
        result, _ = await queued
        self.assertEqual(len(result.segments), 1)


class TestProfiles(PipelineTestCase):

    async def test_known_profiles_load_once(self):
        d = self.make()
        records = [
            KnownProfile("p1", voice_embedding(1).tolist(), 10.0),
            {"id": "p2", "embedding": [0.0] * 16, "duration": 1.0},
        ]
        self.assertEqual(d.load_known_profiles(records), 1)
        self.assertEqual(d.load_known_profiles(records), 0)
        self.assertEqual([p.id for p in d.speakers()], ["p1"])

    async def test_known_profile_matches_stream(self):
        d = self.make()
        d.load_known_profiles([KnownProfile("alice", voice_embedding(4).tolist(), 30.0)])
        await d.initialize()
        await d.append_audio(tone(3.0, 4))
        result = await d.finish()
        self.assertEqual(result.segments[0].speaker_id, "alice")

    async def test_enroll_rename_merge_through_pipeline(self):
        d = self.make()
        await d.initialize()
        a = await d.enroll(tone(3.0, 1), "A")
        b = await d.enroll_from_clips([tone(2.0, 2), tone(2.0, 2)], "B")
        self.assertGreaterEqual(await d.similarity(tone(3.0, 1), a.id), 0.95)
        d.rename(a.id, "Ana")
        merged = d.merge(a.id, b.id)
        self.assertEqual(merged.name, "Ana")
        self.assertEqual(len(d.speakers()), 1)
        with self.assertRaises(ProcessingError):
            d.merge(a.id, a.id)


if __name__ == '__main__':
    unittest.main()
