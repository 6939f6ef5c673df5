import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
from dotenv import load_dotenv
from scipy.io import wavfile

from live_diarization.components.audio_conversion import to_mono_float32
from live_diarization.config import DiarizerConfig, StreamingConfig
from live_diarization.errors import DiarizationError
from live_diarization.services import profile_io
from live_diarization.streaming_diarizer import StreamingDiarizer

logger = logging.getLogger("Pipeline")

DEFAULT_PROFILES = "storage/speaker_profiles.json"


def read_wav(path: str) -> Tuple[np.ndarray, int]:
    """WAV -> (float32 mono, sample_rate). Resampling happens in the pipeline."""
    sample_rate, data = wavfile.read(path)
    return to_mono_float32(data), int(sample_rate)


def build_pipeline(live: bool = False, debug: bool = False) -> StreamingDiarizer:
    from live_diarization.components.titanet_extractor import TitaNetExtractor

    diarizer_config = DiarizerConfig.from_env()
    if debug and not diarizer_config.debug_mode:
        diarizer_config = replace(diarizer_config, debug_mode=True)
    streaming_config = StreamingConfig.from_env()
    if live and not streaming_config.live_processing_enabled:
        streaming_config = replace(streaming_config, live_processing_enabled=True)

    return StreamingDiarizer(
        TitaNetExtractor(diarizer_config),
        diarizer_config=diarizer_config,
        streaming_config=streaming_config,
    )


async def diarize_file(
    pipeline: StreamingDiarizer,
    wav_path: str,
    chunk_seconds: float = 0.5,
) -> Optional[dict]:
    """
    Stream a WAV through the pipeline in fixed chunks, as capture would,
    then finalize.
    """
    audio, sample_rate = read_wav(wav_path)
    chunk = max(1, int(sample_rate * chunk_seconds))
    logger.info(f"Streaming {wav_path}: {len(audio) / sample_rate:.2f}s @ {sample_rate} Hz in {chunk_seconds}s chunks")

    for start in range(0, len(audio), chunk):
        await pipeline.append_audio(audio[start:start + chunk], sample_rate)
        # Let a finished live window merge before the next chunk
        await asyncio.sleep(0)

    result = await pipeline.finish()
    if result is None:
        logger.error(f"No result for {wav_path}: {pipeline.last_error}")
        return None

    out = result.to_dict()
    names = {p.id: p.name for p in pipeline.speakers()}
    for seg in out["segments"]:
        seg["speaker_name"] = names.get(seg["speaker_id"], seg["speaker_id"])
    return out


async def run_diarize(args) -> int:
    pipeline = build_pipeline(live=args.live, debug=args.debug)
    profile_io.load_profiles(pipeline.store, args.profiles)
    await pipeline.initialize()
    try:
        out = await diarize_file(pipeline, args.wav, args.chunk_seconds)
        if out is None:
            return 1
        text = json.dumps(out, indent=2)
        if args.output:
            Path(args.output).write_text(text)
            logger.info(f"Result written to {args.output}")
        else:
            print(text)
        profile_io.save_profiles(pipeline.store, args.profiles)
        return 0
    finally:
        await pipeline.shutdown()


async def run_enroll(args) -> int:
    pipeline = build_pipeline()
    profile_io.load_profiles(pipeline.store, args.profiles)
    await pipeline.initialize()
    try:
        clips: List[np.ndarray] = []
        rates = set()
        for path in args.wavs:
            audio, sr = read_wav(path)
            clips.append(audio)
            rates.add(sr)
        if len(rates) > 1:
            logger.error(f"All enrollment clips must share a sample rate, got {sorted(rates)}")
            return 2

        sample_rate = rates.pop()
        if len(clips) == 1:
            profile = await pipeline.enroll(clips[0], args.name, sample_rate)
        else:
            profile = await pipeline.enroll_from_clips(clips, args.name, sample_rate)
        profile_io.save_profiles(pipeline.store, args.profiles)
        print(json.dumps({"id": profile.id, "name": profile.name, "duration": profile.duration}))
        return 0
    finally:
        await pipeline.shutdown()


async def run_verify(args) -> int:
    pipeline = build_pipeline()
    profile_io.load_profiles(pipeline.store, args.profiles)
    await pipeline.initialize()
    try:
        audio, sr = read_wav(args.wav)
        confidence = await pipeline.similarity(audio, args.speaker_id, sr)
        print(json.dumps({"speaker_id": args.speaker_id, "confidence": round(confidence, 4)}))
        return 0
    finally:
        await pipeline.shutdown()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Streaming speaker diarization")
    parser.add_argument("--profiles", default=DEFAULT_PROFILES, help="Speaker profile JSON (loaded and saved)")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("diarize", help="Diarize a WAV file")
    p.add_argument("wav")
    p.add_argument("--output", "-o", default=None, help="Write JSON here instead of stdout")
    p.add_argument("--chunk-seconds", type=float, default=0.5)
    p.add_argument("--live", action="store_true", help="Run live windows while streaming")
    p.add_argument("--debug", action="store_true", help="Include speaker database and timings")
    p.set_defaults(func=run_diarize)

    p = sub.add_parser("enroll", help="Enroll a speaker from one or more WAV clips")
    p.add_argument("name")
    p.add_argument("wavs", nargs="+")
    p.set_defaults(func=run_enroll)

    p = sub.add_parser("verify", help="Score a WAV against an enrolled speaker")
    p.add_argument("speaker_id")
    p.add_argument("wav")
    p.set_defaults(func=run_verify)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    # Configure Logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
    )

    try:
        return asyncio.run(args.func(args))
    except DiarizationError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
