from __future__ import annotations


class ReelhouseError(Exception):
    """Base error. ``status_code`` and ``code`` let the HTTP layer map it without knowing the type."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(ReelhouseError):
    status_code = 400
    code = "validation_error"


class UnsupportedExtension(ValidationError):
    status_code = 415
    code = "unsupported_extension"


class FileTooLarge(ValidationError):
    status_code = 413
    code = "file_too_large"


class InvalidChunkIndex(ValidationError):
    code = "invalid_chunk_index"


class ChunkTooLarge(ValidationError):
    status_code = 413
    code = "chunk_too_large"


class ChunkOutOfOrder(ValidationError):
    status_code = 409
    code = "chunk_out_of_order"


class IncompleteUpload(ValidationError):
    status_code = 409
    code = "incomplete_upload"

    def __init__(self, message: str, missing: list[int] | None = None):
        super().__init__(message)
        self.missing = list(missing or [])

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["missing_chunks"] = self.missing[:100]
        return payload


class ResourceExhaustion(ReelhouseError):
    status_code = 507
    code = "resource_exhausted"


class InsufficientStorage(ResourceExhaustion):
    code = "insufficient_storage"


class TranscodeQueueFull(ResourceExhaustion):
    status_code = 503
    code = "transcode_queue_full"


class SessionNotFound(ReelhouseError):
    status_code = 404
    code = "session_not_found"


class UploadAlreadyActive(ReelhouseError):
    status_code = 409
    code = "upload_already_active"


class FileMissing(ReelhouseError):
    status_code = 410
    code = "file_missing"


class VideoNotFound(ReelhouseError):
    status_code = 404
    code = "video_not_found"


class NotVideoOwner(ReelhouseError):
    status_code = 403
    code = "not_video_owner"


class StateInconsistency(ReelhouseError):
    status_code = 409
    code = "state_inconsistency"


class InvalidTransition(StateInconsistency):
    code = "invalid_transition"

    def __init__(self, video_id: str, current, target):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(f"Video {video_id} cannot move from {current_value} to {target_value}")
        self.video_id = video_id
        self.current = current
        self.target = target


class SubprocessFailure(ReelhouseError):
    code = "subprocess_failure"


class ProcessLaunchError(SubprocessFailure):
    code = "process_launch_failed"


class ProcessTimeout(SubprocessFailure):
    code = "process_timeout"


class ProcessExitError(SubprocessFailure):
    code = "process_exit_error"

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class DuplicateTask(SubprocessFailure):
    status_code = 409
    code = "duplicate_task"
