from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Iterable

import sentry_sdk

from ..config import DEFAULT_QUALITIES, Settings
from ..errors import StateInconsistency, SubprocessFailure, VideoNotFound
from ..metrics import ACTIVE_TRANSCODES, VIDEO_TRANSCODE_COUNT, VIDEO_TRANSCODE_LATENCY
from ..models.video import VideoStatus
from ..tracing import pipeline_span
from ..utils.filesystem import atomic_write_text, remove_file_quietly, remove_tree
from .probe import DEFAULT_PROBE, ProbeResult, ffmpeg_thumbnail_cmd, ffprobe_cmd, parse_probe_output
from .process_supervisor import ExitResult, ProcessSupervisor
from .videos import DEFAULT_THUMBNAIL_NAME as THUMBNAIL_NAME
from .videos import VideoService

logger = logging.getLogger("reelhouse.pipeline")

MASTER_MANIFEST_NAME = "master.m3u8"
PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "seg_%03d.ts"

CANCELLED_MESSAGE = "Transcoding cancelled"
NO_QUALITY_MESSAGE = "Transcoding failed: no quality could be produced"


@dataclass(frozen=True)
class QualityProfile:
    label: str
    width: int
    height: int
    bandwidth: int
    level: str = "4.0"
    baseline: bool = False

    @property
    def video_kbps(self) -> int:
        return self.bandwidth // 1000


# Ascending order is the encode order.
QUALITY_CATALOG: dict[str, QualityProfile] = {
    "480p": QualityProfile("480p", 854, 480, 1_500_000, baseline=True),
    "720p": QualityProfile("720p", 1280, 720, 3_000_000),
    "1080p": QualityProfile("1080p", 1920, 1080, 6_000_000),
    "1440p": QualityProfile("1440p", 2560, 1440, 12_000_000, level="5.1"),
    "2160p": QualityProfile("2160p", 3840, 2160, 25_000_000, level="5.1"),
}


def parse_quality_allow_list(labels: Iterable[str] | str | None) -> list[str]:
    if labels is None:
        return []
    if isinstance(labels, str):
        labels = labels.split(",")
    allowed: list[str] = []
    for raw in labels:
        label = str(raw).strip().lower()
        if not label or label in allowed:
            continue
        if label not in QUALITY_CATALOG:
            logger.warning("Ignoring unknown quality %r", raw)
            continue
        allowed.append(label)
    return allowed


def build_quality_profiles(source_height: int, allowed: Iterable[str] | str | None) -> list[QualityProfile]:
    """
    Profiles to encode for a source of ``source_height``, lowest first.

    A profile is used only when allow-listed; an allow-list with no known
    label means the default tiers. Tiers above the baseline also need
    ``source_height >= profile.height`` so nothing is upscaled.
    """
    allowed_labels = set(parse_quality_allow_list(allowed) or DEFAULT_QUALITIES)
    profiles = []
    for profile in QUALITY_CATALOG.values():
        if profile.label not in allowed_labels:
            continue
        if profile.baseline or source_height >= profile.height:
            profiles.append(profile)
    return profiles


def parse_bitrate(value: str) -> int:
    """``"128k"`` -> 128000."""
    raw = (value or "").strip().lower()
    multiplier = 1
    if raw.endswith("k"):
        multiplier, raw = 1000, raw[:-1]
    elif raw.endswith("m"):
        multiplier, raw = 1_000_000, raw[:-1]
    try:
        return int(float(raw) * multiplier)
    except ValueError:
        return 0


def ffmpeg_hls_cmd(
    settings: Settings,
    *,
    src_path: str,
    out_dir: str,
    profile: QualityProfile,
) -> list[str]:
    w, h = profile.width, profile.height
    video_filter = (
        f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
        f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2"
    )
    segment = max(1, settings.segment_seconds)
    return [
        settings.ffmpeg_bin,
        "-hide_banner",
        "-nostdin",
        "-nostats",
        "-loglevel",
        "error",
        "-y",
        "-i",
        src_path,
        "-map",
        "0:v:0",
        "-map",
        "0:a:0?",
        "-sn",
        "-vf",
        video_filter,
        "-c:v",
        "libx264",
        "-preset",
        settings.h264_preset,
        "-crf",
        str(settings.crf),
        "-profile:v",
        "high",
        "-level",
        profile.level,
        "-pix_fmt",
        "yuv420p",
        "-maxrate",
        f"{profile.video_kbps}k",
        "-bufsize",
        f"{profile.video_kbps * 2}k",
        "-force_key_frames",
        f"expr:gte(t,n_forced*{segment})",
        "-c:a",
        "aac",
        "-b:a",
        settings.audio_bitrate,
        "-ar",
        "48000",
        "-ac",
        "2",
        "-f",
        "hls",
        "-hls_time",
        str(segment),
        "-hls_playlist_type",
        "vod",
        "-hls_list_size",
        "0",
        "-hls_flags",
        "independent_segments",
        "-hls_segment_filename",
        os.path.join(out_dir, SEGMENT_PATTERN),
        os.path.join(out_dir, PLAYLIST_NAME),
    ]


def build_master_manifest(profiles: Iterable[QualityProfile], audio_bitrate: int = 0) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for profile in profiles:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={profile.bandwidth + audio_bitrate},"
            f"RESOLUTION={profile.width}x{profile.height}"
        )
        lines.append(f"{profile.label}/{PLAYLIST_NAME}")
    return "\n".join(lines) + "\n"


def write_master_manifest(master_path: str, profiles: list[QualityProfile], audio_bitrate: int = 0) -> None:
    atomic_write_text(master_path, build_master_manifest(profiles, audio_bitrate))


class TranscodeCancelled(Exception):
    pass


class TranscodingPipeline:
    """
    Turns one uploaded source into thumbnail + per-quality HLS renditions +
    master playlist, moving the video record PROCESSING -> READY | FAILED.

    ``transcode`` never raises: every outcome ends on the video record.
    """

    def __init__(self, videos: VideoService, supervisor: ProcessSupervisor, settings: Settings):
        self.videos = videos
        self.supervisor = supervisor
        self.settings = settings
        self._lock = threading.Lock()
        self._running: set[str] = set()
        self._cancelled: set[str] = set()

    def transcode(self, video_id: str, input_path: str) -> VideoStatus | None:
        log_extra = {"video_id": video_id}
        try:
            self.videos.mark_processing(video_id)
        except StateInconsistency as exc:
            logger.error("Transcode aborted before start: %s", exc.message, extra=log_extra)
            return None
        except VideoNotFound:
            logger.error("Transcode aborted: video record not found", extra=log_extra)
            return None

        with self._lock:
            self._running.add(video_id)
        if ACTIVE_TRANSCODES is not None:
            ACTIVE_TRANSCODES.inc()
        started = time.perf_counter()
        logger.info("Transcode started", extra=log_extra)
        try:
            with pipeline_span("transcode", video_id):
                status = self._run_steps(video_id, input_path)
        except TranscodeCancelled:
            status = self._finish_cancelled(video_id)
        except VideoNotFound:
            logger.error("Video record disappeared during transcode", extra=log_extra)
            remove_tree(self.videos.hls_dir_for(video_id))
            remove_tree(self.videos.thumbnail_dir_for(video_id))
            remove_file_quietly(input_path)
            status = None
        except Exception as exc:
            logger.exception("Transcode failed", extra=log_extra)
            sentry_sdk.capture_exception(exc, tags={"video_id": video_id})
            remove_file_quietly(input_path)
            status = self._record_failure(video_id, str(exc) or exc.__class__.__name__)
        finally:
            with self._lock:
                self._running.discard(video_id)
                self._cancelled.discard(video_id)
            if ACTIVE_TRANSCODES is not None:
                ACTIVE_TRANSCODES.dec()
            if VIDEO_TRANSCODE_LATENCY is not None:
                VIDEO_TRANSCODE_LATENCY.observe(time.perf_counter() - started)
        logger.info("Transcode finished with status %s", getattr(status, "value", status), extra=log_extra)
        return status

    def _run_steps(self, video_id: str, input_path: str) -> VideoStatus:
        if not os.path.isfile(input_path):
            raise FileNotFoundError(f"Source file is missing: {input_path}")

        video_dir = self.videos.hls_dir_for(video_id)
        master_path = os.path.join(video_dir, MASTER_MANIFEST_NAME)
        os.makedirs(video_dir, exist_ok=True)
        remove_file_quietly(master_path)

        self._check_cancelled(video_id)
        with pipeline_span("thumbnail", video_id):
            self.generate_thumbnail(video_id, input_path)

        self._check_cancelled(video_id)
        with pipeline_span("probe", video_id):
            probe = self.probe(video_id, input_path)

        self.videos.update_metadata(
            video_id,
            width=probe.width,
            height=probe.height,
            duration_seconds=probe.duration_whole_seconds,
            file_size=os.path.getsize(input_path),
        )

        profiles = build_quality_profiles(probe.height, self.settings.qualities)
        logger.info(
            "Encoding %s for %sx%s source",
            ",".join(p.label for p in profiles) or "nothing",
            probe.width,
            probe.height,
            extra={"video_id": video_id},
        )

        succeeded: list[QualityProfile] = []
        for idx, profile in enumerate(profiles):
            self._check_cancelled(video_id)
            with pipeline_span(f"encode:{profile.label}", video_id, quality=profile.label):
                ok = self.encode_quality(video_id, input_path, video_dir, profile)
            if ok:
                succeeded.append(profile)
                self.videos.add_quality(video_id, profile.label)
            self.videos.set_progress(video_id, int((idx + 1) * 95 / len(profiles)))
        self._begin_finish(video_id)

        if succeeded:
            with pipeline_span("manifest", video_id):
                write_master_manifest(master_path, succeeded, parse_bitrate(self.settings.audio_bitrate))

        if remove_file_quietly(input_path):
            logger.info("Removed source file %s", input_path, extra={"video_id": video_id})
        self.videos.clear_source(video_id)

        if not succeeded:
            self.videos.mark_failed(video_id, NO_QUALITY_MESSAGE)
            return VideoStatus.FAILED
        self.videos.mark_ready(video_id)
        return VideoStatus.READY

    def generate_thumbnail(self, video_id: str, input_path: str) -> bool:
        """Grab one frame at the configured offset, retrying at 0 for short sources. Never fatal."""
        thumb_dir = self.videos.thumbnail_dir_for(video_id)
        dst_path = os.path.join(thumb_dir, THUMBNAIL_NAME)
        tmp_path = os.path.join(thumb_dir, f".{THUMBNAIL_NAME}.tmp")
        offsets = [self.settings.thumbnail_offset_seconds]
        if self.settings.thumbnail_offset_seconds:
            offsets.append(0)

        try:
            os.makedirs(thumb_dir, exist_ok=True)
            for seek in offsets:
                cmd = ffmpeg_thumbnail_cmd(
                    self.settings.ffmpeg_bin,
                    src_path=input_path,
                    dst_path=tmp_path,
                    seek_seconds=seek,
                    width=self.settings.thumbnail_width,
                )
                remove_file_quietly(tmp_path)
                result = self.supervisor.run(
                    cmd[0],
                    cmd[1:],
                    timeout=self.settings.thumbnail_timeout,
                    task_key=f"{video_id}_thumbnail",
                )
                if result.cancelled:
                    break
                if result.ok and os.path.exists(tmp_path) and os.path.getsize(tmp_path) > 0:
                    os.replace(tmp_path, dst_path)
                    self.videos.set_thumbnail(video_id)
                    return True
                logger.info(
                    "Thumbnail at %ss failed (%s)", seek, result.describe(), extra={"video_id": video_id}
                )
        except (SubprocessFailure, OSError) as exc:
            logger.warning("Thumbnail generation failed: %s", exc, extra={"video_id": video_id})
        finally:
            remove_file_quietly(tmp_path)
        logger.warning("Continuing without a thumbnail", extra={"video_id": video_id})
        return False

    def probe(self, video_id: str, input_path: str) -> ProbeResult:
        cmd = ffprobe_cmd(self.settings.ffprobe_bin, input_path)
        try:
            result = self.supervisor.run(
                cmd[0],
                cmd[1:],
                timeout=self.settings.probe_timeout,
                task_key=f"{video_id}_probe",
            )
        except SubprocessFailure as exc:
            logger.warning("ffprobe unavailable, using defaults: %s", exc, extra={"video_id": video_id})
            return DEFAULT_PROBE
        if not result.ok:
            logger.warning("ffprobe failed (%s), using defaults", result.describe(), extra={"video_id": video_id})
            return DEFAULT_PROBE
        parsed = parse_probe_output(result.output_tail)
        if parsed is None:
            logger.warning("Unparseable ffprobe output, using defaults", extra={"video_id": video_id})
            return DEFAULT_PROBE
        return parsed

    def encode_quality(self, video_id: str, input_path: str, video_dir: str, profile: QualityProfile) -> bool:
        quality_dir = os.path.join(video_dir, profile.label)
        remove_tree(quality_dir)
        os.makedirs(quality_dir, exist_ok=True)
        cmd = ffmpeg_hls_cmd(self.settings, src_path=input_path, out_dir=quality_dir, profile=profile)
        log_extra = {"video_id": video_id, "task_key": f"{video_id}_{profile.label}"}

        result: ExitResult | None = None
        try:
            result = self.supervisor.run(
                cmd[0],
                cmd[1:],
                timeout=self.settings.encode_timeout,
                task_key=f"{video_id}_{profile.label}",
            )
        except SubprocessFailure as exc:
            logger.error("Encoder for %s could not run: %s", profile.label, exc, extra=log_extra)

        if result is not None and result.ok and os.path.exists(os.path.join(quality_dir, PLAYLIST_NAME)):
            self._count(profile.label, "success")
            logger.info("Encoded %s in %.1fs", profile.label, result.duration, extra=log_extra)
            return True

        remove_tree(quality_dir)
        if result is None:
            outcome = "error"
        elif result.ok:
            outcome = "error"
            logger.error("Encoder for %s produced no playlist", profile.label, extra=log_extra)
        else:
            outcome = result.outcome
            logger.warning("Encoding %s failed: %s", profile.label, result.describe(), extra=log_extra)
        self._count(profile.label, outcome)
        return False

    def cancel(self, video_id: str) -> bool:
        """Kill every running subprocess of ``video_id``'s pipeline; the run ends FAILED."""
        with self._lock:
            if video_id not in self._running:
                return False
            self._cancelled.add(video_id)
        killed = self.supervisor.cancel_prefix(f"{video_id}_")
        logger.info("Transcode cancellation requested (%s processes killed)", killed, extra={"video_id": video_id})
        return True

    def is_running(self, video_id: str) -> bool:
        with self._lock:
            return video_id in self._running

    def _check_cancelled(self, video_id: str) -> None:
        with self._lock:
            cancelled = video_id in self._cancelled
        if cancelled:
            raise TranscodeCancelled(video_id)

    def _begin_finish(self, video_id: str) -> None:
        """Last point a cancel can take effect; later ``cancel`` calls return False."""
        with self._lock:
            if video_id in self._cancelled:
                raise TranscodeCancelled(video_id)
            self._running.discard(video_id)

    def _finish_cancelled(self, video_id: str) -> VideoStatus | None:
        remove_tree(self.videos.hls_dir_for(video_id))
        return self._record_failure(video_id, CANCELLED_MESSAGE, clear_qualities=True)

    def _record_failure(self, video_id: str, message: str, *, clear_qualities: bool = False) -> VideoStatus | None:
        try:
            self.videos.mark_failed(video_id, message, clear_qualities=clear_qualities)
        except (StateInconsistency, VideoNotFound) as exc:
            logger.error("Could not record transcode failure: %s", exc, extra={"video_id": video_id})
            return None
        return VideoStatus.FAILED

    @staticmethod
    def _count(quality: str, status: str) -> None:
        if VIDEO_TRANSCODE_COUNT is not None:
            VIDEO_TRANSCODE_COUNT.labels(quality, status).inc()
