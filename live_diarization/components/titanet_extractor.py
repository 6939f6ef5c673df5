import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from live_diarization import config
from live_diarization.components.audio_conversion import resample
from live_diarization.components.embedding_extractor import EmbeddingExtractor
from live_diarization.config import DiarizerConfig
from live_diarization.dtos import DiarizationResult, PipelineTimings, TimedSpeakerSegment
from live_diarization.errors import ModelLoadError, ProcessingError

try:
    import torch
except ImportError:
    torch = None

try:
    import nemo.collections.asr as nemo_asr
except ImportError:
    nemo_asr = None

logger = logging.getLogger("TitaNetExtractor")


@dataclass
class SpeechWindow:
    start_sample: int
    end_sample: int
    active_ratio: float # Fraction of active frames, used as quality


def frame_energy_dbfs(audio: np.ndarray, sample_rate: int = config.SAMPLE_RATE) -> np.ndarray:
    """Per-frame energy in dBFS over FRAME_SECONDS frames (trailing partial frame ignored)."""
    frame_len = max(1, int(sample_rate * config.FRAME_SECONDS))
    n_frames = len(audio) // frame_len
    if n_frames == 0:
        return np.zeros(0, dtype=np.float64)
    frames = audio[: n_frames * frame_len].astype(np.float64).reshape(n_frames, frame_len)
    power = np.mean(frames ** 2, axis=1)
    return 10.0 * np.log10(power + 1e-12)


def find_speech_windows(
    audio: np.ndarray,
    sample_rate: int = config.SAMPLE_RATE,
    min_active_frames: float = 10.0,
    window_seconds: float = config.EMBEDDING_WINDOW_SECONDS,
) -> List[SpeechWindow]:
    """
    Fixed analysis windows that hold at least min_active_frames frames above
    ENERGY_THRESH_DBFS. A trailing window shorter than half a window is ignored.
    """
    frame_len = max(1, int(sample_rate * config.FRAME_SECONDS))
    active = frame_energy_dbfs(audio, sample_rate) > config.ENERGY_THRESH_DBFS
    win = int(sample_rate * window_seconds)
    windows = []

    for start in range(0, len(audio), win):
        end = min(start + win, len(audio))
        if end - start < win // 2:
            break
        f0, f1 = start // frame_len, end // frame_len
        frames = active[f0:f1]
        if frames.size == 0:
            continue
        count = int(np.count_nonzero(frames))
        if count >= min_active_frames:
            windows.append(SpeechWindow(start, end, count / frames.size))
    return windows


def cluster_embeddings(embeddings: np.ndarray, threshold: float, max_clusters: int = -1) -> List[int]:
    """
    Greedy online clustering by cosine similarity to running centroids.
    A new cluster opens when the best similarity is below threshold, unless
    max_clusters (> 0) is already reached, in which case the nearest wins.
    """
    centroids: List[np.ndarray] = []
    labels = []
    for emb in embeddings:
        v = emb / (np.linalg.norm(emb) + 1e-12)
        best, best_sim = -1, -np.inf
        for idx, c in enumerate(centroids):
            sim = float(np.dot(v, c / (np.linalg.norm(c) + 1e-12)))
            if sim > best_sim:
                best, best_sim = idx, sim

        if best >= 0 and (best_sim >= threshold or 0 < max_clusters <= len(centroids)):
            centroids[best] = centroids[best] + v
            labels.append(best)
        else:
            centroids.append(v.copy())
            labels.append(len(centroids) - 1)
    return labels


def build_segments(
    windows: List[SpeechWindow],
    embeddings: np.ndarray,
    labels: List[int],
    sample_rate: int,
    min_silence_gap: float,
    min_speech_duration: float,
) -> List[TimedSpeakerSegment]:
    """
    Join consecutive same-label windows separated by <= min_silence_gap,
    then drop anything shorter than min_speech_duration.
    """
    groups: List[Tuple[int, List[int]]] = []
    for i, label in enumerate(labels):
        if groups:
            last_label, members = groups[-1]
            gap = (windows[i].start_sample - windows[members[-1]].end_sample) / sample_rate
            if last_label == label and gap <= min_silence_gap:
                members.append(i)
                continue
        groups.append((label, [i]))

    segments = []
    for label, members in groups:
        start = windows[members[0]].start_sample / sample_rate
        end = windows[members[-1]].end_sample / sample_rate
        if end - start < min_speech_duration:
            continue
        emb = np.mean(embeddings[members], axis=0)
        emb = emb / (np.linalg.norm(emb) + 1e-12)
        quality = float(np.mean([windows[m].active_ratio for m in members]))
        segments.append(TimedSpeakerSegment(
            speaker_id=f"local_{label}",
            embedding=emb.astype(np.float32),
            start_time_seconds=start,
            end_time_seconds=end,
            quality_score=quality,
        ))
    return segments


class TitaNetExtractor(EmbeddingExtractor):
    """
    Default extractor: energy-gated windows embedded with NVIDIA TitaNet.

    Responsibility:
    - Wrap TitaNet Model (NeMo).
    - Batched forward passes, one batch per chunk_duration of audio.
    - In-call clustering to local labels; global identity is the matcher's job.
    - Thread-safe only in the sense that the pipeline calls it from one worker.
    """

    def __init__(self, diarizer_config: Optional[DiarizerConfig] = None, model_name: str = config.EMBEDDING_MODEL, device: Optional[str] = None):
        self.config = diarizer_config or DiarizerConfig()
        self.model_name = model_name
        self.device_name = device
        self.device = None
        self.model = None
        self.model_load_seconds = 0.0

    def load(self):
        if self.model is not None:
            return
        if torch is None or nemo_asr is None:
            raise ModelLoadError("TitaNet requires torch and nemo_toolkit[asr] (install the 'models' extra)")

        start = time.perf_counter()
        try:
            self.device = torch.device(self.device_name or ("cuda" if torch.cuda.is_available() else "cpu"))
            logger.info(f"Loading TitaNet model: {self.model_name} on {self.device}")
            # Suppress NeMo logging
            logging.getLogger("nemo_logger").setLevel(logging.ERROR)

            model = nemo_asr.models.EncDecSpeakerLabelModel.from_pretrained(model_name=self.model_name)
            model.to(self.device)
            model.eval()
            model.freeze()
            self.model = model
        except Exception as e:
            raise ModelLoadError(f"Failed to load TitaNet ({self.model_name}): {e}") from e

        self.model_load_seconds = time.perf_counter() - start
        logger.info(f"TitaNet loaded successfully in {self.model_load_seconds:.2f}s.")

    def segment(self, samples: np.ndarray, sample_rate: int = config.SAMPLE_RATE) -> DiarizationResult:
        if self.model is None:
            raise ProcessingError("TitaNet model not loaded")

        t0 = time.perf_counter()
        self.ensure_valid(samples, sample_rate)
        audio = resample(np.asarray(samples, dtype=np.float32), sample_rate, config.SAMPLE_RATE)
        sr = config.SAMPLE_RATE

        t1 = time.perf_counter()
        windows = find_speech_windows(audio, sr, self.config.min_active_frames_count)
        t2 = time.perf_counter()
        if not windows:
            logger.debug("No active windows in chunk")
            return DiarizationResult(segments=[], timings=PipelineTimings(
                audio_loading_seconds=t1 - t0, segmentation_seconds=t2 - t1,
            ))

        embeddings = self._embed_windows(audio, windows)
        t3 = time.perf_counter()
        labels = cluster_embeddings(embeddings, self.config.clustering_threshold, self.config.num_clusters)
        t4 = time.perf_counter()
        segments = build_segments(
            windows, embeddings, labels, sr,
            self.config.min_silence_gap, self.config.min_speech_duration,
        )
        t5 = time.perf_counter()

        timings = PipelineTimings(
            audio_loading_seconds=t1 - t0,
            segmentation_seconds=t2 - t1,
            embedding_extraction_seconds=t3 - t2,
            speaker_clustering_seconds=t4 - t3,
            post_processing_seconds=t5 - t4,
        )
        logger.debug(f"Chunk: {len(windows)} windows -> {len(segments)} segments, {len(set(labels))} local speakers")
        return DiarizationResult(segments=segments, timings=timings)

    def _embed_windows(self, audio: np.ndarray, windows: List[SpeechWindow]) -> np.ndarray:
        # chunk_overlap has no meaning for disjoint analysis windows
        batch_size = max(1, int(self.config.chunk_duration / config.EMBEDDING_WINDOW_SECONDS))
        out = []
        for i in range(0, len(windows), batch_size):
            batch = windows[i:i + batch_size]
            max_len = max(w.end_sample - w.start_sample for w in batch)
            signal = np.zeros((len(batch), max_len), dtype=np.float32)
            lengths = []
            for row, w in enumerate(batch):
                chunk = audio[w.start_sample:w.end_sample]
                signal[row, :len(chunk)] = chunk
                lengths.append(len(chunk))

            with torch.no_grad():
                input_signal = torch.from_numpy(signal).to(self.device)
                input_length = torch.tensor(lengths).to(self.device)
                # TitaNet forward returns (logits, embeddings)
                _, embs = self.model.forward(input_signal=input_signal, input_signal_length=input_length)
                embs = embs.cpu().numpy().astype(np.float32)

            # L2 Normalize
            norms = np.linalg.norm(embs, axis=1, keepdims=True)
            out.append(embs / np.maximum(norms, 1e-9))
        return np.concatenate(out, axis=0)
