import os

import pytest

from reelhouse.models.video import VideoStatus
from reelhouse.services import transcoding
from reelhouse.services.process_supervisor import ExitResult
from reelhouse.services.transcoding import (
    CANCELLED_MESSAGE,
    NO_QUALITY_MESSAGE,
    TranscodingPipeline,
)

VIDEO_ID = "c" * 32


@pytest.fixture()
def pipeline(videos, supervisor, settings):
    return TranscodingPipeline(videos, supervisor, settings)


@pytest.fixture()
def source(videos):
    videos.create_video(VIDEO_ID, title="Clip", filename="clip.mp4")
    upload_dir = videos.upload_dir_for(VIDEO_ID)
    os.makedirs(upload_dir, exist_ok=True)
    path = os.path.join(upload_dir, "original.mp4")
    with open(path, "wb") as handle:
        handle.write(b"\x00" * 4096)
    videos.record_source(VIDEO_ID, path, 4096)
    return path


def _master(videos):
    return os.path.join(videos.hls_dir_for(VIDEO_ID), "master.m3u8")


def test_full_transcode_of_1080p_source(pipeline, videos, supervisor, source):
    status = pipeline.transcode(VIDEO_ID, source)

    assert status == VideoStatus.READY
    video = videos.require_video(VIDEO_ID)
    assert video.status == VideoStatus.READY
    assert video.available_qualities == ["480p", "720p", "1080p"]
    assert video.processing_progress == 100
    assert (video.width, video.height, video.duration_seconds) == (1920, 1080, 12)
    assert video.manifest_url == f"/hls/{VIDEO_ID}/master.m3u8"
    assert video.thumbnail_url == f"/thumbnails/{VIDEO_ID}/default.jpg"
    assert video.processed_at is not None
    assert video.source_path is None
    assert not os.path.exists(source)

    with open(_master(videos), encoding="utf-8") as handle:
        assert handle.read().count("#EXT-X-STREAM-INF") == 3
    assert os.path.isfile(os.path.join(videos.thumbnail_dir_for(VIDEO_ID), "default.jpg"))
    assert supervisor.encode_labels() == ["480p", "720p", "1080p"]


def test_small_source_is_not_upscaled(pipeline, videos, supervisor, source):
    supervisor.probe_lines = ("854,480,3.0",)

    assert pipeline.transcode(VIDEO_ID, source) == VideoStatus.READY

    assert videos.require_video(VIDEO_ID).available_qualities == ["480p"]
    assert supervisor.encode_labels() == ["480p"]


def test_partial_failure_still_publishes_successful_renditions(pipeline, videos, supervisor, source):
    supervisor.fail_qualities = {"480p", "1080p"}

    assert pipeline.transcode(VIDEO_ID, source) == VideoStatus.READY

    video = videos.require_video(VIDEO_ID)
    assert video.available_qualities == ["720p"]
    with open(_master(videos), encoding="utf-8") as handle:
        manifest = handle.read()
    assert manifest.count("#EXT-X-STREAM-INF") == 1
    assert "720p/playlist.m3u8" in manifest
    hls_dir = videos.hls_dir_for(VIDEO_ID)
    assert not os.path.exists(os.path.join(hls_dir, "480p"))
    assert not os.path.exists(os.path.join(hls_dir, "1080p"))


def test_all_qualities_failing_marks_video_failed(pipeline, videos, supervisor, source):
    supervisor.fail_qualities = {"480p", "720p", "1080p"}

    assert pipeline.transcode(VIDEO_ID, source) == VideoStatus.FAILED

    video = videos.require_video(VIDEO_ID)
    assert video.status == VideoStatus.FAILED
    assert video.processing_error == NO_QUALITY_MESSAGE
    assert video.available_qualities == []
    assert video.manifest_url is None
    assert not os.path.exists(_master(videos))


def test_timed_out_quality_leaves_no_partial_output(pipeline, videos, supervisor, source):
    supervisor.timeout_qualities = {"720p"}

    assert pipeline.transcode(VIDEO_ID, source) == VideoStatus.READY

    assert videos.require_video(VIDEO_ID).available_qualities == ["480p", "1080p"]
    assert not os.path.exists(os.path.join(videos.hls_dir_for(VIDEO_ID), "720p"))


def test_probe_failure_falls_back_to_1080p_defaults(pipeline, videos, supervisor, source):
    supervisor.probe_exit = 1
    supervisor.probe_lines = ("Invalid data found when processing input",)

    assert pipeline.transcode(VIDEO_ID, source) == VideoStatus.READY

    video = videos.require_video(VIDEO_ID)
    assert (video.width, video.height, video.duration_seconds) == (1920, 1080, 0)
    assert video.available_qualities == ["480p", "720p", "1080p"]


def test_thumbnail_failure_is_not_fatal(pipeline, videos, supervisor, source):
    supervisor.thumbnail_ok = False

    assert pipeline.transcode(VIDEO_ID, source) == VideoStatus.READY

    assert videos.require_video(VIDEO_ID).thumbnail_url is None
    thumbnail_calls = [cmd for key, cmd in supervisor.calls if key.endswith("_thumbnail")]
    assert len(thumbnail_calls) == 2
    assert "-ss" in thumbnail_calls[0]
    assert "-ss" not in thumbnail_calls[1]


def test_missing_record_aborts_before_any_subprocess(pipeline, supervisor, tmp_path):
    path = tmp_path / "orphan.mp4"
    path.write_bytes(b"data")

    assert pipeline.transcode("d" * 32, str(path)) is None
    assert supervisor.calls == []


def test_video_already_processing_is_not_picked_up_twice(pipeline, videos, supervisor, source):
    videos.mark_processing(VIDEO_ID)

    assert pipeline.transcode(VIDEO_ID, source) is None
    assert supervisor.calls == []
    assert os.path.exists(source)


def test_missing_source_marks_failed(pipeline, videos, supervisor, source):
    os.remove(source)

    assert pipeline.transcode(VIDEO_ID, source) == VideoStatus.FAILED

    video = videos.require_video(VIDEO_ID)
    assert "Source file is missing" in video.processing_error
    assert supervisor.calls == []


def test_cancel_mid_encode_fails_the_run_and_keeps_source(pipeline, videos, supervisor, source):
    def cancel_during(label):
        if label == "720p":
            assert pipeline.cancel(VIDEO_ID)
            return ExitResult(-9, cancelled=True)
        return None

    supervisor.on_encode = cancel_during

    assert pipeline.transcode(VIDEO_ID, source) == VideoStatus.FAILED

    video = videos.require_video(VIDEO_ID)
    assert video.processing_error == CANCELLED_MESSAGE
    assert video.available_qualities == []
    assert supervisor.encode_labels() == ["480p", "720p"]
    assert supervisor.cancelled_prefixes == [f"{VIDEO_ID}_"]
    assert not os.path.exists(videos.hls_dir_for(VIDEO_ID))
    assert os.path.exists(source)
    assert not pipeline.is_running(VIDEO_ID)


def test_cancel_when_idle_returns_false(pipeline):
    assert pipeline.cancel(VIDEO_ID) is False


def test_retranscode_resets_previous_results(pipeline, videos, supervisor, source, tmp_path):
    supervisor.fail_qualities = {"480p", "720p", "1080p"}
    pipeline.transcode(VIDEO_ID, source)

    again = tmp_path / "again.mp4"
    again.write_bytes(b"\x00" * 1024)
    supervisor.fail_qualities = set()

    assert pipeline.transcode(VIDEO_ID, str(again)) == VideoStatus.READY
    video = videos.require_video(VIDEO_ID)
    assert video.processing_error is None
    assert video.available_qualities == ["480p", "720p", "1080p"]


def test_non_finite_probe_values_fall_back_to_1080p_defaults(pipeline, videos, supervisor, source):
    supervisor.probe_lines = ("nan,nan,10",)

    assert pipeline.transcode(VIDEO_ID, source) == VideoStatus.READY

    video = videos.require_video(VIDEO_ID)
    assert (video.width, video.height, video.duration_seconds) == (1920, 1080, 0)
    assert supervisor.encode_labels() == ["480p", "720p", "1080p"]


def test_unknown_quality_allow_list_uses_default_tiers(make_settings, videos, supervisor, source):
    pipeline = TranscodingPipeline(videos, supervisor, make_settings(qualities=("360p", "4k")))

    assert pipeline.transcode(VIDEO_ID, source) == VideoStatus.READY
    assert supervisor.encode_labels() == ["480p", "720p", "1080p"]


def test_cancel_before_finishing_fails_the_run(pipeline, videos, supervisor, source, monkeypatch):
    set_progress = videos.set_progress

    def cancel_after_last_quality(video_id, progress):
        set_progress(video_id, progress)
        if progress == 95:
            assert pipeline.cancel(VIDEO_ID)

    monkeypatch.setattr(videos, "set_progress", cancel_after_last_quality)

    assert pipeline.transcode(VIDEO_ID, source) == VideoStatus.FAILED
    assert videos.require_video(VIDEO_ID).processing_error == CANCELLED_MESSAGE
    assert os.path.exists(source)


def test_cancel_after_finishing_started_is_refused(pipeline, videos, supervisor, source, monkeypatch):
    results = []
    write_manifest = transcoding.write_master_manifest

    def cancel_then_write(*args, **kwargs):
        results.append(pipeline.cancel(VIDEO_ID))
        write_manifest(*args, **kwargs)

    monkeypatch.setattr(transcoding, "write_master_manifest", cancel_then_write)

    assert pipeline.transcode(VIDEO_ID, source) == VideoStatus.READY
    assert results == [False]
    assert supervisor.cancelled_prefixes == []
    assert videos.require_video(VIDEO_ID).status == VideoStatus.READY
