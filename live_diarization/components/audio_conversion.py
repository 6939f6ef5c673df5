import logging
from typing import Optional

import numpy as np
import soxr

from live_diarization import config

logger = logging.getLogger("AudioConversion")


def to_mono_float32(samples, channels: int = 1) -> np.ndarray:
    """
    Decode capture samples to float32 mono in [-1, 1].
    Accepts int16 / int32 PCM or float input, interleaved 1D or (frames, channels) 2D.
    """
    data = np.asarray(samples)

    if data.dtype == np.int16:
        data = data.astype(np.float32) / 32768.0
    elif data.dtype == np.int32:
        data = data.astype(np.float32) / 2147483648.0
    elif data.dtype == np.uint8:
        data = (data.astype(np.float32) - 128.0) / 128.0
    else:
        data = data.astype(np.float32)

    # Mixdown
    if data.ndim == 2:
        data = np.mean(data, axis=1)
    elif channels > 1:
        data = np.mean(data.reshape(-1, channels), axis=1)

    return np.ascontiguousarray(data, dtype=np.float32).reshape(-1)


def resample(samples: np.ndarray, source_rate: int, target_rate: int = config.SAMPLE_RATE) -> np.ndarray:
    """One-shot resample of a complete clip."""
    audio = np.asarray(samples, dtype=np.float32).reshape(-1)
    if source_rate == target_rate or audio.size == 0:
        return audio
    return soxr.resample(audio, source_rate, target_rate).astype(np.float32)


class StreamResampler:
    """
    Chunked resampler for live capture. Keeps filter state between chunks
    so chunk boundaries do not click. Rebuilt if the source rate changes.
    """

    def __init__(self, target_rate: int = config.SAMPLE_RATE):
        self.target_rate = target_rate
        self.source_rate = 0
        self.resampler: Optional[soxr.ResampleStream] = None

    def process(self, samples: np.ndarray, source_rate: int) -> np.ndarray:
        audio = np.asarray(samples, dtype=np.float32).reshape(-1)
        if source_rate == self.target_rate:
            return audio

        if self.source_rate != source_rate:
            if self.resampler is not None:
                logger.info(f"Source rate changed {self.source_rate} -> {source_rate}; rebuilding resampler")
            self.source_rate = source_rate
            # fast, high quality
            self.resampler = soxr.ResampleStream(source_rate, self.target_rate, 1, dtype=np.float32)

        return self.resampler.resample_chunk(audio)

    def flush(self) -> np.ndarray:
        """Drain whatever the filter still holds."""
        if self.resampler is None:
            return np.zeros(0, dtype=np.float32)
        tail = self.resampler.resample_chunk(np.zeros(0, dtype=np.float32), last=True)
        self.resampler = None
        self.source_rate = 0
        return tail

    def reset(self):
        self.resampler = None
        self.source_rate = 0
