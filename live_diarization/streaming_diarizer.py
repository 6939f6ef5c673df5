import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Iterable, List, Optional, Sequence

import numpy as np

from live_diarization import config
from live_diarization.components.adaptive_window import AdaptiveWindowController
from live_diarization.components.audio_accumulator import AudioAccumulator
from live_diarization.components.audio_conversion import StreamResampler, to_mono_float32
from live_diarization.components.embedding_extractor import EmbeddingExtractor
from live_diarization.components.inference_executor import InferenceExecutor
from live_diarization.components.rate_controller import AdaptiveRateController
from live_diarization.config import DiarizerConfig, StreamingConfig
from live_diarization.dtos import AudioValidationResult, DiarizationResult, DropReport, KnownProfile
from live_diarization.errors import InvalidEmbeddingError, ModelLoadError, NotInitializedError, ProcessingError
from live_diarization.infrastructure.event_bus import EventBus
from live_diarization.services import profile_io
from live_diarization.services.enrollment_service import EnrollmentService
from live_diarization.services.identity_service import IdentityMatcher, coalesce_segments
from live_diarization.services.verification_service import VerificationService
from live_diarization.speaker_db import SpeakerIdentityStore, SpeakerProfile
from live_diarization.state_machine import PipelineState, PipelineStateMachine

logger = logging.getLogger("StreamingDiarizer")


class StreamingDiarizer:
    """
    Result aggregator and lifecycle owner.

    Responsibility:
    - Feed capture audio into the accumulator, gate live windows through the
      adaptive window / rate controllers, attribute live segments to global speakers.
    - On finish(): wait for the in-flight window, flush the pending one,
      then run one exhaustive pass over the full recording.
    - Expose enrollment / verification / profile management.

    Concurrency: every method runs on one asyncio loop, which owns the buffers
    and serializes store mutation. Extractor calls run on a single worker thread.
    At most one live window is in flight; results merge in submission order.
    """

    def __init__(
        self,
        extractor: EmbeddingExtractor,
        diarizer_config: Optional[DiarizerConfig] = None,
        streaming_config: Optional[StreamingConfig] = None,
        store: Optional[SpeakerIdentityStore] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.extractor = extractor
        self.config = diarizer_config or DiarizerConfig()
        self.streaming = streaming_config or StreamingConfig()
        self.clock = clock
        s = self.streaming

        self.accumulator = AudioAccumulator(
            sample_rate=s.sample_rate,
            max_live_buffer_seconds=s.max_live_buffer_seconds,
            backpressure_enabled=s.backpressure_enabled,
            terminal_drop_threshold=s.terminal_drop_threshold,
            live_enabled=s.live_processing_enabled,
        )
        self.window = AdaptiveWindowController(
            window_seconds=s.processing_window_seconds,
            min_seconds=s.min_window_seconds,
            max_seconds=s.max_window_seconds,
            step_seconds=s.window_step_seconds,
            enabled=s.adaptive_window_enabled,
            sample_rate=s.sample_rate,
        )
        self.rate = AdaptiveRateController(
            enabled=s.adaptive_rate_enabled,
            cooldown_seconds=s.cooldown_seconds,
            drop_threshold=s.pause_drop_threshold,
            clock=clock,
        )

        # Identity store outlives recordings
        self.store = store or SpeakerIdentityStore()
        self.matcher = IdentityMatcher(self.store, self.config)
        self.executor = InferenceExecutor()
        self.enrollment = EnrollmentService(self.store, extractor, self.executor)
        self.verification = VerificationService(self.store, extractor, self.executor)
        self.bus = event_bus or EventBus()
        self.state = PipelineStateMachine()
        self.resampler = StreamResampler(s.sample_rate)

        self.live_result = DiarizationResult()
        self.last_result: Optional[DiarizationResult] = None
        self.last_error: Optional[BaseException] = None

        self._live_task: Optional[asyncio.Task] = None
        self._window_index = 0
        self._last_notice_at: Optional[float] = None
        self._load_failed = False
        self._known_profiles_loaded = False
        self._closing = False

    # --- Lifecycle ---

    @property
    def is_initialized(self) -> bool:
        return self.state.initialized

    async def initialize(self):
        """
        One-time model setup. A failure is permanent for this instance.
        """
        if self._load_failed:
            raise ModelLoadError("Model load failed earlier; create a new pipeline instance")
        if self.state.initialized:
            return

        try:
            _, elapsed = await self.executor.run(self.extractor.load)
        except ModelLoadError:
            self._load_failed = True
            raise
        except Exception as e:
            self._load_failed = True
            raise ModelLoadError(f"Extractor setup failed: {e}") from e

        self.state.transition(PipelineState.INITIALIZED)
        logger.info(f"Pipeline initialized in {elapsed:.2f}s (live={self.streaming.live_processing_enabled})")

    async def shutdown(self):
        self._closing = True
        while self._live_task is not None:
            await self._live_task
        await asyncio.get_running_loop().run_in_executor(None, self.executor.shutdown)
        await self.bus.shutdown()

    def _require_initialized(self):
        if not self.state.initialized:
            raise NotInitializedError()

    # --- Streaming ---

    async def append_audio(self, samples, sample_rate: int = config.SAMPLE_RATE):
        """
        Accept one capture chunk. Never waits for inference.
        """
        if not self.streaming.enabled:
            return
        self._require_initialized()
        if self.state.state == PipelineState.FINALIZING:
            raise ProcessingError("Cannot append audio while finalizing")
        self.state.transition(PipelineState.STREAMING)

        if self.rate.maybe_resume():
            window = self.window.nudge(self.streaming.resume_window_nudge_seconds)
            logger.info(f"Resuming live diarization after cooldown; window={window:.2f}s")
            self.bus.publish({"type": "adaptive_resume", "window_seconds": window})

        audio = self.resampler.process(to_mono_float32(samples), sample_rate)
        report = self.accumulator.append(audio)
        if report is not None:
            self._handle_drop(report)

        self._maybe_start_window()

    def _handle_drop(self, report: DropReport):
        if report.terminal:
            self.bus.publish({
                "type": "terminal_backpressure",
                "consecutive_drops": report.consecutive_drops,
                "live_buffer_seconds": report.live_buffer_seconds,
            })

        if self.rate.evaluate(report.consecutive_drops, report.live_buffer_seconds, self.window.window_seconds):
            self.bus.publish({
                "type": "adaptive_pause",
                "consecutive_drops": report.consecutive_drops,
                "live_buffer_seconds": report.live_buffer_seconds,
                "cooldown_seconds": self.streaming.cooldown_seconds,
            })

        # Throttle notices to avoid flooding consumers
        if self.streaming.show_backpressure_alerts and report.consecutive_drops >= self.streaming.pause_drop_threshold:
            now = self.clock()
            interval = self.streaming.backpressure_notice_interval_seconds
            if self._last_notice_at is None or now - self._last_notice_at > interval:
                self._last_notice_at = now
                self.bus.publish({
                    "type": "backpressure_drop",
                    "dropped_samples": report.dropped_samples,
                    "live_buffer_seconds": report.live_buffer_seconds,
                    "consecutive_drops": report.consecutive_drops,
                })

    def _maybe_start_window(self):
        if not self.streaming.live_processing_enabled or not self.rate.live_allowed:
            return
        if self._live_task is not None:
            return
        if not self.window.should_trigger(self.accumulator.pending_samples):
            return

        offset = self.accumulator.window_offset_samples
        audio = self.accumulator.drain_live_window(self.window.window_samples)
        index = self._window_index
        self._window_index += 1
        logger.info(f"Submitting live window {index}: {len(audio) / self.streaming.sample_rate:.2f}s at {offset / self.streaming.sample_rate:.2f}s")
        self._live_task = asyncio.get_running_loop().create_task(self._live_cycle(audio, offset, index))

    async def _live_cycle(self, audio: np.ndarray, offset_samples: int, index: int):
        try:
            await self._process_window(audio, offset_samples, index)
        finally:
            self._live_task = None
        if self.state.state == PipelineState.STREAMING and not self._closing:
            self._maybe_start_window()

    async def _process_window(self, audio: np.ndarray, offset_samples: int, index: int):
        """
        One live inference cycle. Failures are recorded, never raised:
        streaming keeps accepting audio.
        """
        sr = self.streaming.sample_rate
        try:
            result, elapsed = await self.executor.run(self.extractor.segment, audio, sr)
            self.window.record_inference(elapsed)

            offset = offset_samples / sr
            shifted = [
                replace(seg, start_time_seconds=seg.start_time_seconds + offset, end_time_seconds=seg.end_time_seconds + offset)
                for seg in result.segments
            ]
            attributed = self.matcher.attribute(shifted, learn=True)
            self.live_result.segments = coalesce_segments(
                self.live_result.segments + attributed, self.config.min_silence_gap
            )

            event = {
                "type": "incremental_result",
                "window_index": index,
                "segments": [seg.to_dict() for seg in attributed],
            }
            if self.config.debug_mode:
                event["speaker_database"] = self.store.speaker_database()
            self.bus.publish(event)
            logger.info(f"Live window {index} done in {elapsed:.2f}s: {len(attributed)} segments")
        except Exception as e:
            logger.exception(f"Live window {index} failed: {e}")
            self.last_error = e
            self.bus.publish({"type": "window_error", "window_index": index, "error": str(e)})
        finally:
            self.accumulator.release_in_flight()

    async def finish(self) -> Optional[DiarizationResult]:
        """
        End of recording. Returns the authoritative result, or None when there
        was nothing to process or the final pass failed (see last_error).
        """
        if not self.streaming.enabled:
            return None
        self._require_initialized()
        if self.state.state == PipelineState.FINALIZING:
            raise ProcessingError("finish() already in progress")
        self.state.transition(PipelineState.FINALIZING)

        try:
            # No cancellation: let the outstanding window complete
            while self._live_task is not None:
                await self._live_task

            report = self.accumulator.append(self.resampler.flush())
            if report is not None:
                self._handle_drop(report)

            if self.streaming.live_processing_enabled and self.rate.live_allowed and self.accumulator.pending_samples > 0:
                offset = self.accumulator.window_offset_samples
                audio = self.accumulator.drain_live_window()
                index = self._window_index
                self._window_index += 1
                logger.info(f"Flushing pending live window {index}: {len(audio) / self.streaming.sample_rate:.2f}s")
                await self._process_window(audio, offset, index)
            else:
                # Discard partial window when not streaming live
                self.accumulator.discard_live()

            return await self._final_pass()
        finally:
            self._reset_live_state()
            self.state.transition(PipelineState.IDLE)

    async def _final_pass(self) -> Optional[DiarizationResult]:
        full = self.accumulator.drain_full_recording()
        if full.size == 0:
            logger.info("Final pass skipped: nothing recorded")
            return None

        sr = self.streaming.sample_rate
        try:
            result, elapsed = await self.executor.run(self.extractor.segment, full, sr)
            segments = self.matcher.attribute(result.segments, learn=False)
        except Exception as e:
            # Full recording is kept so finish() can be retried
            logger.exception(f"Final diarization failed: {e}")
            self.last_error = e
            return None

        final = DiarizationResult(segments=segments)
        if self.config.debug_mode:
            final.speaker_database = self.store.speaker_database()
            if result.timings is not None:
                final.timings = replace(
                    result.timings, model_load_seconds=getattr(self.extractor, "model_load_seconds", 0.0)
                )

        self.last_result = final
        self.accumulator.clear_full_recording()
        logger.info(
            f"Final diarization done in {elapsed:.2f}s over {full.size / sr:.2f}s: "
            f"{len(segments)} segments, {len(final.speaker_ids())} speakers"
        )
        return final

    def _reset_live_state(self):
        self.accumulator.discard_live()
        self.rate.reset()
        self.resampler.reset()
        self._last_notice_at = None
        self.live_result = DiarizationResult()

    async def reset(self):
        """Abandon the current recording (live and full audio). Profiles are kept."""
        if self.state.state == PipelineState.FINALIZING:
            raise ProcessingError("Cannot reset while finalizing")
        while self._live_task is not None:
            await self._live_task
        self.accumulator.reset()
        self._reset_live_state()
        if self.state.state == PipelineState.STREAMING:
            self.state.transition(PipelineState.IDLE)

    # --- Profiles ---

    def load_known_profiles(self, profiles: Iterable, force: bool = False) -> int:
        """
        Hydrate the identity store once per pipeline instance.
        Accepts KnownProfile records or dicts with id / embedding / duration.
        """
        if self._known_profiles_loaded and not force:
            logger.info("Known profiles already loaded; skipping")
            return 0

        loaded = 0
        for item in profiles:
            known = item if isinstance(item, KnownProfile) else KnownProfile(**item)
            try:
                self.store.upsert(known.id, known.embedding, known.duration)
                loaded += 1
            except InvalidEmbeddingError as e:
                logger.warning(f"Skipping known profile {known.id}: {e}")

        self._known_profiles_loaded = True
        logger.info(f"Loaded {loaded} known speaker profiles")
        return loaded

    def import_profiles(self, records: List[dict]) -> List[SpeakerProfile]:
        return profile_io.import_profiles(self.store, records)

    def export_profiles(self) -> List[dict]:
        return profile_io.export_profiles(self.store)

    def validate_audio(self, samples, sample_rate: int = config.SAMPLE_RATE) -> AudioValidationResult:
        return self.extractor.validate_audio(np.asarray(samples), sample_rate)

    async def enroll(self, samples, name: str, sample_rate: int = config.SAMPLE_RATE) -> SpeakerProfile:
        self._require_initialized()
        return await self.enrollment.enroll_from_clip(samples, name, sample_rate)

    async def enroll_from_clips(self, clips: Sequence, name: str, sample_rate: int = config.SAMPLE_RATE) -> SpeakerProfile:
        self._require_initialized()
        return await self.enrollment.enroll_from_clips(clips, name, sample_rate)

    async def enhance(self, speaker_id: str, clips: Sequence, sample_rate: int = config.SAMPLE_RATE) -> SpeakerProfile:
        self._require_initialized()
        return await self.enrollment.enhance(speaker_id, clips, sample_rate)

    async def similarity(self, samples, speaker_id: str, sample_rate: int = config.SAMPLE_RATE) -> float:
        self._require_initialized()
        return await self.verification.similarity(samples, speaker_id, sample_rate)

    def rename(self, speaker_id: str, new_name: str) -> SpeakerProfile:
        return self.store.rename(speaker_id, new_name)

    def merge(self, keep_id: str, absorb_id: str, keep_name: Optional[str] = None) -> SpeakerProfile:
        return self.store.merge(keep_id, absorb_id, keep_name)

    def speakers(self) -> List[SpeakerProfile]:
        return self.store.profiles()
