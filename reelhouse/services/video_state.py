"""
Status lifecycle of a video record.

    UPLOADING -> PROCESSING -> READY | FAILED

READY and FAILED are terminal for a processing run; an explicit re-transcode
moves them back to PROCESSING. UPLOADING may also go straight to FAILED when
the upload finalized but the transcode could not be scheduled.
"""

from __future__ import annotations

from ..errors import InvalidTransition
from ..models.video import VideoStatus

ALLOWED_TRANSITIONS: dict[VideoStatus, frozenset[VideoStatus]] = {
    VideoStatus.UPLOADING: frozenset({VideoStatus.PROCESSING, VideoStatus.FAILED}),
    VideoStatus.PROCESSING: frozenset({VideoStatus.READY, VideoStatus.FAILED}),
    VideoStatus.READY: frozenset({VideoStatus.PROCESSING}),
    VideoStatus.FAILED: frozenset({VideoStatus.PROCESSING}),
}

TERMINAL_STATES = frozenset({VideoStatus.READY, VideoStatus.FAILED})


def can_transition(current: VideoStatus, target: VideoStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def sources_for(target: VideoStatus) -> frozenset[VideoStatus]:
    """States from which ``target`` may be entered."""
    return frozenset(src for src, dests in ALLOWED_TRANSITIONS.items() if target in dests)


def ensure_transition(video_id: str, current: VideoStatus, target: VideoStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(video_id, current, target)


def is_terminal(status: VideoStatus) -> bool:
    return status in TERMINAL_STATES
