class DiarizationError(Exception):
    """Base class for every failure raised by the pipeline."""


class NotInitializedError(DiarizationError):
    def __init__(self, message: str = "Diarization pipeline not initialized. Call initialize() first."):
        super().__init__(message)


class ModelLoadError(DiarizationError):
    pass


class InvalidAudioError(DiarizationError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid audio: {reason}")


class NoSpeechDetectedError(DiarizationError):
    def __init__(self, message: str = "No speech detected in audio"):
        super().__init__(message)


class InvalidEmbeddingError(DiarizationError):
    def __init__(self, message: str = "Invalid speaker embedding"):
        super().__init__(message)


class ProcessingError(DiarizationError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Diarization processing failed: {message}")


class SpeakerNotFoundError(DiarizationError):
    def __init__(self, speaker_id: str):
        self.speaker_id = speaker_id
        super().__init__(f"Speaker not found: {speaker_id}")


class ConfigurationError(DiarizationError):
    pass
