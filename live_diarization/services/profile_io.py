import json
import logging
import os
from datetime import datetime
from typing import List

from live_diarization import config
from live_diarization.speaker_db import RawEmbedding, SpeakerIdentityStore, SpeakerProfile

logger = logging.getLogger("ProfileIO")

EXPORT_VERSION = 1


def profile_to_dict(profile: SpeakerProfile) -> dict:
    return {
        "id": profile.id,
        "name": profile.name,
        "display_color": profile.display_color,
        "embedding": [float(x) for x in profile.current_embedding],
        "duration": profile.duration,
        "created_at": profile.created_at.isoformat(),
        "updated_at": profile.updated_at.isoformat(),
        "update_count": profile.update_count,
    }


def profile_from_dict(data: dict) -> SpeakerProfile:
    """
    Rebuild a profile from its exported form. The raw history restarts from
    the exported embedding so later updates average against it.
    """
    created_at = datetime.fromisoformat(data["created_at"])
    updated_at = datetime.fromisoformat(data.get("updated_at") or data["created_at"])
    profile = SpeakerProfile(
        id=data["id"],
        name=data["name"],
        current_embedding=data["embedding"],
        duration=float(data.get("duration", 0.0)),
        created_at=created_at,
        updated_at=updated_at,
        update_count=int(data.get("update_count", 1)),
        display_color=data.get("display_color", config.SPEAKER_COLORS[0]),
    )
    profile.raw_embeddings.append(RawEmbedding("import", profile.current_embedding.copy(), updated_at))
    return profile


def export_profiles(store: SpeakerIdentityStore) -> List[dict]:
    return [profile_to_dict(p) for p in store.profiles()]


def import_profiles(store: SpeakerIdentityStore, records: List[dict]) -> List[SpeakerProfile]:
    """Restore exported records into the store. Existing ids are replaced."""
    restored = []
    for record in records:
        restored.append(store.restore(profile_from_dict(record)))
    logger.info(f"Imported {len(restored)} speaker profiles")
    return restored


def save_profiles(store: SpeakerIdentityStore, path: str):
    """
    Atomic write: temp file then os.replace.
    """
    folder = os.path.dirname(path)
    if folder:
        os.makedirs(folder, exist_ok=True)

    payload = {"version": EXPORT_VERSION, "profiles": export_profiles(store)}
    temp_path = path + ".tmp"
    with open(temp_path, "w") as f:
        json.dump(payload, f, indent=2)
    os.replace(temp_path, path)
    logger.info(f"Saved {len(payload['profiles'])} profiles to {path}")


def load_profiles(store: SpeakerIdentityStore, path: str) -> List[SpeakerProfile]:
    if not os.path.exists(path):
        logger.info(f"No profile file at {path}; starting empty")
        return []
    with open(path, "r") as f:
        data = json.load(f)
    # Bare list is accepted as well as the versioned envelope
    records = data["profiles"] if isinstance(data, dict) else data
    return import_profiles(store, records)
