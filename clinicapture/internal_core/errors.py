from __future__ import annotations


class ScribeError(RuntimeError):
    code = "SCRIBE_ERROR"
    retry_hint = ""

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


# Acquisition


class DeviceUnavailable(ScribeError):
    code = "DEVICE_UNAVAILABLE"
    retry_hint = "Connect a microphone and try again."


class PermissionDenied(ScribeError):
    code = "PERMISSION_DENIED"
    retry_hint = "Grant microphone access and try again."


# Transport


class AuthenticationFailed(ScribeError):
    code = "AUTHENTICATION_FAILED"
    retry_hint = "Restart the recording to request a new transcription token."


class HandshakeFailed(ScribeError):
    code = "HANDSHAKE_FAILED"


class MaxRetriesExceeded(ScribeError):
    code = "MAX_RETRIES_EXCEEDED"
    retry_hint = "Stop and restart the recording, or disable live transcription."

    def __init__(self, message: str, *, attempts: int, last_close_code: int | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_close_code = last_close_code


class StreamingProtocolError(ScribeError):
    code = "STREAMING_PROTOCOL_ERROR"
    retry_hint = "Restart the recording."


# Transcription


class NoAudioCaptured(ScribeError):
    code = "NO_AUDIO_CAPTURED"
    retry_hint = "Check the microphone input level and record again."


class TranscriptionFailed(ScribeError):
    code = "TRANSCRIPTION_FAILED"
    retry_hint = "Resubmit the recording for transcription."


class EmptyTranscript(TranscriptionFailed):
    code = "EMPTY_TRANSCRIPT"


class TranscriptIncomplete(TranscriptionFailed):
    code = "TRANSCRIPT_INCOMPLETE"
    retry_hint = "Stop the recording and wait for the transcription to finish."


# Generation


class OrchestrationFailed(ScribeError):
    code = "ORCHESTRATION_FAILED"
    retry_hint = "Regenerate this document."

    def __init__(self, message: str, *, document_type: str):
        super().__init__(message)
        self.document_type = document_type


class CompletionError(ScribeError):
    """Raised by completion clients when a single LLM call fails."""

    code = "COMPLETION_FAILED"


class HistoryUnavailable(ScribeError):
    code = "HISTORY_UNAVAILABLE"
