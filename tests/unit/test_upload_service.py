import io
import os

import pytest
from werkzeug.datastructures import FileStorage

from reelhouse.errors import (
    FileMissing,
    FileTooLarge,
    IncompleteUpload,
    InsufficientStorage,
    InvalidTransition,
    NotVideoOwner,
    SessionNotFound,
    StateInconsistency,
    TranscodeQueueFull,
    UnsupportedExtension,
    VideoNotFound,
)
from reelhouse.models.video import VideoStatus
from reelhouse.services.chunk_store import ChunkStore
from reelhouse.services.transcoding import CANCELLED_MESSAGE, TranscodingPipeline
from reelhouse.services.upload_sessions import UploadRegistry
from reelhouse.services.uploads import UNSCHEDULED_MESSAGE, UploadService
from reelhouse.services.worker_pool import BoundedWorkerPool, TranscodeDispatcher


def _build(settings, videos, dispatcher, disk_probe, clock):
    registry = UploadRegistry(settings, disk_probe, clock=clock)
    chunks = ChunkStore(
        registry,
        max_chunk_size=settings.max_chunk_size,
        disk_probe=disk_probe,
        min_disk_free=settings.min_disk_free,
    )
    return UploadService(settings, registry, chunks, videos, dispatcher, clock=clock)


@pytest.fixture()
def uploads(settings, videos, dispatcher, disk_probe, clock):
    return _build(settings, videos, dispatcher, disk_probe, clock)


def _upload_all(uploads, payload=b"0123456789" * 30, chunks=3, filename="holiday.mp4", **meta):
    session = uploads.init_upload(filename, len(payload), chunks, **meta)
    size = -(-len(payload) // chunks)
    for idx in range(chunks):
        uploads.upload_chunk(session.session_id, idx, chunks, io.BytesIO(payload[idx * size : (idx + 1) * size]))
    return session


def test_init_creates_uploading_video(uploads, videos):
    session = uploads.init_upload("../../holiday.mp4", 300, 3, description="beach", tags=["sea"])

    video = videos.require_video(session.video_id)
    assert video.status == VideoStatus.UPLOADING
    assert video.title == "holiday"
    assert video.filename == "holiday.mp4"
    assert video.description == "beach"
    assert video.tags == ["sea"]
    assert session.original_filename == "holiday.mp4"


def test_rejected_init_leaves_no_record(uploads, store):
    with pytest.raises(UnsupportedExtension):
        uploads.init_upload("malware.exe", 300, 3)
    assert store.list_by_status(VideoStatus.UPLOADING) == []


def test_complete_hands_off_to_dispatcher(uploads, videos, dispatcher):
    session = _upload_all(uploads, title="Holiday")

    video = uploads.complete_upload(session.video_id)

    final_path = os.path.join(videos.upload_dir_for(session.video_id), "original.mp4")
    assert dispatcher.submitted == [(session.video_id, final_path)]
    assert os.path.getsize(final_path) == 300
    assert video.status == VideoStatus.UPLOADING
    assert video.source_path == final_path
    assert video.title == "Holiday"
    assert not os.path.exists(session.temp_file_path)
    with pytest.raises(SessionNotFound):
        uploads.get_session(session.session_id)


def test_complete_by_session_id(uploads, dispatcher):
    session = _upload_all(uploads)
    uploads.complete_upload(session_id=session.session_id)
    assert dispatcher.submitted[0][0] == session.video_id


def test_complete_unknown_video(uploads):
    with pytest.raises(SessionNotFound):
        uploads.complete_upload("9" * 32)


def test_complete_with_full_queue_keeps_the_session(uploads, dispatcher):
    session = _upload_all(uploads)
    dispatcher.capacity = False

    with pytest.raises(TranscodeQueueFull):
        uploads.complete_upload(session.video_id)

    assert uploads.get_session(session.session_id) is session
    assert not session.finalized
    assert os.path.exists(session.temp_file_path)

    dispatcher.capacity = True
    uploads.complete_upload(session.video_id)
    assert len(dispatcher.submitted) == 1


def test_dispatch_race_marks_video_failed(uploads, videos, dispatcher):
    session = _upload_all(uploads)
    dispatcher.submit_error = TranscodeQueueFull("Transcode queue is full, try again later")

    with pytest.raises(TranscodeQueueFull):
        uploads.complete_upload(session.video_id)

    video = videos.require_video(session.video_id)
    assert video.status == VideoStatus.FAILED
    assert video.processing_error == UNSCHEDULED_MESSAGE
    assert os.path.isfile(video.source_path)

    dispatcher.submit_error = None
    uploads.retranscode(session.video_id)
    assert dispatcher.submitted == [(session.video_id, video.source_path)]


def test_incomplete_upload_cannot_complete(uploads):
    session = uploads.init_upload("holiday.mp4", 300, 3)
    uploads.upload_chunk(session.session_id, 0, 3, io.BytesIO(b"x" * 100))

    with pytest.raises(IncompleteUpload) as excinfo:
        uploads.complete_upload(session.video_id)
    assert excinfo.value.missing == [1, 2]
    assert uploads.get_session(session.session_id) is session


def test_cancel_upload_discards_everything(uploads, videos):
    session = uploads.init_upload("holiday.mp4", 300, 3)
    uploads.upload_chunk(session.session_id, 0, 3, io.BytesIO(b"x" * 100))

    uploads.cancel_upload(session.session_id)

    assert not os.path.exists(session.temp_file_path)
    assert videos.get_video(session.video_id) is None
    with pytest.raises(SessionNotFound):
        uploads.cancel_upload(session.session_id)


def test_disk_exhaustion_abandons_upload(make_settings, videos, dispatcher, disk_probe, clock):
    uploads = _build(make_settings(min_disk_free=1000), videos, dispatcher, disk_probe, clock)
    session = uploads.init_upload("holiday.mp4", 300, 3)
    uploads.upload_chunk(session.session_id, 0, 3, io.BytesIO(b"x" * 100))
    disk_probe.free = 500

    with pytest.raises(InsufficientStorage):
        uploads.upload_chunk(session.session_id, 1, 3, io.BytesIO(b"x" * 100))

    assert videos.get_video(session.video_id) is None
    assert not os.path.exists(session.temp_file_path)
    assert uploads.registry.active_count() == 0


def test_stale_uploads_are_reaped(make_settings, videos, dispatcher, disk_probe, clock):
    settings = make_settings(upload_session_ttl=60.0, upload_reap_interval=10.0)
    uploads = _build(settings, videos, dispatcher, disk_probe, clock)
    stale = uploads.init_upload("old.mp4", 300, 3)
    uploads.upload_chunk(stale.session_id, 0, 3, io.BytesIO(b"x" * 100))

    clock.advance(120)
    fresh = uploads.init_upload("new.mp4", 300, 3)

    assert uploads.registry.find(stale.session_id) is None
    assert not os.path.exists(stale.temp_file_path)
    assert videos.get_video(stale.video_id) is None
    assert uploads.get_session(fresh.session_id) is fresh


def test_retranscode_requires_terminal_state(uploads, videos):
    session = uploads.init_upload("holiday.mp4", 300, 3)
    with pytest.raises(InvalidTransition):
        uploads.retranscode(session.video_id)


def test_retranscode_requires_source(uploads, videos):
    session = _upload_all(uploads)
    uploads.complete_upload(session.video_id)
    video = videos.require_video(session.video_id)
    videos.mark_processing(video.id)
    videos.mark_ready(video.id)
    os.remove(video.source_path)

    with pytest.raises(FileMissing):
        uploads.retranscode(video.id)


def test_cancel_transcode(uploads, videos, dispatcher):
    session = _upload_all(uploads)
    uploads.complete_upload(session.video_id)

    dispatcher.cancel_result = None
    with pytest.raises(StateInconsistency):
        uploads.cancel_transcode(session.video_id)

    dispatcher.cancel_result = "queued"
    assert uploads.cancel_transcode(session.video_id) == "queued"
    video = videos.require_video(session.video_id)
    assert video.status == VideoStatus.FAILED
    assert video.processing_error == CANCELLED_MESSAGE


def test_delete_video_during_upload(uploads, videos):
    session = uploads.init_upload("holiday.mp4", 300, 3)
    uploads.upload_chunk(session.session_id, 0, 3, io.BytesIO(b"x" * 100))

    assert uploads.delete_video(session.video_id) is True

    assert videos.get_video(session.video_id) is None
    assert uploads.registry.active_count() == 0
    assert not os.path.exists(session.temp_file_path)


def test_upload_to_ready_through_local_pool(settings, videos, supervisor, disk_probe, clock):
    pipeline = TranscodingPipeline(videos, supervisor, settings)
    pool = BoundedWorkerPool(workers=1, queue_size=2)
    uploads = _build(settings, videos, TranscodeDispatcher(pipeline, pool), disk_probe, clock)
    session = _upload_all(uploads)

    uploads.complete_upload(session.video_id)
    pool.shutdown(wait=True)

    video = videos.require_video(session.video_id)
    assert video.status == VideoStatus.READY
    assert video.available_qualities == ["480p", "720p", "1080p"]
    assert video.source_path is None


def _image(data=b"\x89PNG\r\n\x1a\nimage", filename="cover.png", content_type="image/png"):
    return FileStorage(stream=io.BytesIO(data), filename=filename, content_type=content_type)


def test_upload_custom_thumbnail(uploads, videos):
    session = uploads.init_upload("clip.mp4", 10, 1, uploader_id="user-1")

    video = uploads.upload_thumbnail(session.video_id, _image(), uploader_id="user-1")

    assert video.thumbnail_url == f"/thumbnails/{session.video_id}/custom.png"
    path = os.path.join(videos.thumbnail_dir_for(session.video_id), "custom.png")
    with open(path, "rb") as handle:
        assert handle.read() == b"\x89PNG\r\n\x1a\nimage"

    jpeg = _image(filename="cover.JPG", content_type="image/jpeg")
    uploads.upload_thumbnail(session.video_id, jpeg, uploader_id="user-1")
    assert sorted(os.listdir(videos.thumbnail_dir_for(session.video_id))) == ["custom.jpg"]


def test_generated_thumbnail_keeps_custom_one(uploads, videos):
    session = uploads.init_upload("clip.mp4", 10, 1)
    uploads.upload_thumbnail(session.video_id, _image())

    videos.set_thumbnail(session.video_id)

    assert videos.require_video(session.video_id).thumbnail_url.endswith("/custom.png")


def test_thumbnail_upload_rejections(uploads, make_settings, videos):
    session = uploads.init_upload("clip.mp4", 10, 1, uploader_id="owner")
    video_id = session.video_id

    with pytest.raises(NotVideoOwner):
        uploads.upload_thumbnail(video_id, _image(), uploader_id="someone-else")
    with pytest.raises(UnsupportedExtension):
        uploads.upload_thumbnail(video_id, _image(content_type="text/plain"), uploader_id="owner")
    with pytest.raises(UnsupportedExtension):
        svg = _image(filename="cover.svg", content_type="image/svg+xml")
        uploads.upload_thumbnail(video_id, svg, uploader_id="owner")
    with pytest.raises(VideoNotFound):
        uploads.upload_thumbnail("a" * 32, _image())

    uploads.settings = make_settings(max_thumbnail_size=4)
    with pytest.raises(FileTooLarge):
        uploads.upload_thumbnail(video_id, _image(), uploader_id="owner")

    thumb_dir = videos.thumbnail_dir_for(video_id)
    assert not os.path.exists(thumb_dir) or os.listdir(thumb_dir) == []
    assert videos.require_video(video_id).thumbnail_url is None
