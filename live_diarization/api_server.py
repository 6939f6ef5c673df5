import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

import numpy as np
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from live_diarization import config
from live_diarization.errors import (
    DiarizationError,
    InvalidAudioError,
    InvalidEmbeddingError,
    NoSpeechDetectedError,
    NotInitializedError,
    ProcessingError,
    SpeakerNotFoundError,
)
from live_diarization.services.profile_io import profile_to_dict
from live_diarization.speaker_db import SpeakerProfile
from live_diarization.streaming_diarizer import StreamingDiarizer

logger = logging.getLogger("API")

_STATUS_BY_ERROR = (
    (SpeakerNotFoundError, 404),
    (InvalidAudioError, 422),
    (NoSpeechDetectedError, 422),
    (InvalidEmbeddingError, 422),
    (NotInitializedError, 503),
    (ProcessingError, 409),
)


class RenameRequest(BaseModel):
    name: str


class MergeRequest(BaseModel):
    keep_id: str
    absorb_id: str
    keep_name: Optional[str] = None


class EnrollRequest(BaseModel):
    name: str
    clips: List[List[float]] # Mono float samples per clip
    sample_rate: int = config.SAMPLE_RATE


class EnhanceRequest(BaseModel):
    clips: List[List[float]]
    sample_rate: int = config.SAMPLE_RATE


class SimilarityRequest(BaseModel):
    samples: List[float]
    sample_rate: int = config.SAMPLE_RATE


class ImportRequest(BaseModel):
    profiles: List[dict]


def speaker_summary(profile: SpeakerProfile) -> dict:
    data = profile_to_dict(profile)
    data.pop("embedding")
    data["dimension"] = profile.dimension
    data["raw_embeddings"] = len(profile.raw_embeddings)
    return data


def create_app(diarizer: StreamingDiarizer, initialize_on_startup: bool = True) -> FastAPI:
    """
    Profile admin API over a running pipeline.
    """

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if initialize_on_startup:
            await diarizer.initialize()
        yield

    app = FastAPI(title="Live Diarization API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DiarizationError)
    async def diarization_error_handler(_request, exc: DiarizationError):
        status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 400)
        if status >= 500:
            logger.error(f"Request failed: {exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})

    # Handlers are async so store mutations share the pipeline's event loop
    @app.get("/health")
    async def health():
        return {
            "state": diarizer.state.state.value,
            "speakers": len(diarizer.store),
            "last_error": str(diarizer.last_error) if diarizer.last_error else None,
        }

    @app.get("/speakers")
    async def list_speakers():
        """List all known speakers (no embeddings)."""
        return [speaker_summary(p) for p in diarizer.speakers()]

    # Declared before /speakers/{speaker_id} so "export" is not taken as an id
    @app.get("/speakers/export")
    async def export_speakers():
        return diarizer.export_profiles()

    @app.post("/speakers/import")
    async def import_speakers(req: ImportRequest):
        restored = diarizer.import_profiles(req.profiles)
        return {"imported": len(restored)}

    @app.post("/speakers/merge")
    async def merge_speakers(req: MergeRequest):
        return speaker_summary(diarizer.merge(req.keep_id, req.absorb_id, req.keep_name))

    @app.post("/speakers/enroll")
    async def enroll_speaker(req: EnrollRequest):
        clips = [np.asarray(c, dtype=np.float32) for c in req.clips]
        if len(clips) == 1:
            profile = await diarizer.enroll(clips[0], req.name, req.sample_rate)
        else:
            profile = await diarizer.enroll_from_clips(clips, req.name, req.sample_rate)
        return speaker_summary(profile)

    @app.get("/speakers/{speaker_id}")
    async def get_speaker(speaker_id: str):
        return speaker_summary(diarizer.store.get(speaker_id))

    @app.post("/speakers/{speaker_id}/rename")
    async def rename_speaker(speaker_id: str, req: RenameRequest):
        return speaker_summary(diarizer.rename(speaker_id, req.name))

    @app.post("/speakers/{speaker_id}/enhance")
    async def enhance_speaker(speaker_id: str, req: EnhanceRequest):
        clips = [np.asarray(c, dtype=np.float32) for c in req.clips]
        return speaker_summary(await diarizer.enhance(speaker_id, clips, req.sample_rate))

    @app.post("/speakers/{speaker_id}/similarity")
    async def speaker_similarity(speaker_id: str, req: SimilarityRequest):
        confidence = await diarizer.similarity(np.asarray(req.samples, dtype=np.float32), speaker_id, req.sample_rate)
        return {"speaker_id": speaker_id, "confidence": confidence}

    return app


if __name__ == "__main__":
    from live_diarization.components.titanet_extractor import TitaNetExtractor
    from live_diarization.config import DiarizerConfig, StreamingConfig

    logging.basicConfig(level=logging.INFO)
    diarizer_config = DiarizerConfig.from_env()
    pipeline = StreamingDiarizer(
        TitaNetExtractor(diarizer_config),
        diarizer_config=diarizer_config,
        streaming_config=StreamingConfig.from_env(),
    )
    uvicorn.run(
        create_app(pipeline),
        host=os.getenv("DIARIZATION_API_HOST", "0.0.0.0"),
        port=int(os.getenv("DIARIZATION_API_PORT", "8000")),
    )
