from __future__ import annotations

import logging
import os

from ..errors import (
    ChunkOutOfOrder,
    FileMissing,
    IncompleteUpload,
    InsufficientStorage,
    InvalidChunkIndex,
    StateInconsistency,
    ValidationError,
)
from ..metrics import UPLOAD_BYTES
from ..utils.filesystem import DiskSpaceProbe, move_file, remove_file_quietly
from ..utils.validation import COPY_BUFFER_SIZE, copy_stream_with_limit, validate_chunk_index
from .upload_sessions import UploadRegistry, UploadSession

logger = logging.getLogger("reelhouse.chunks")

SIZE_MISMATCH_TOLERANCE = 1024


class ChunkStore:
    """
    Assembles sequentially numbered chunks into one temp file per session.

    Chunks must arrive in order: chunk 0 (re)creates the file, chunk ``i``
    is accepted once chunks ``0..i-1`` are written, and re-sending the last
    written chunk rewrites it from its recorded start offset. Anything else
    raises ``ChunkOutOfOrder`` and leaves the file untouched. Writes for one
    session are serialized on the session lock.
    """

    def __init__(
        self,
        registry: UploadRegistry,
        *,
        max_chunk_size: int,
        disk_probe: DiskSpaceProbe | None = None,
        min_disk_free: int = 0,
        buffer_size: int = COPY_BUFFER_SIZE,
    ):
        self.registry = registry
        self.max_chunk_size = max_chunk_size
        self.disk_probe = disk_probe
        self.min_disk_free = min_disk_free
        self.buffer_size = buffer_size

    def write_chunk(self, session_id: str, chunk_index: int, total_chunks: int, stream) -> float:
        validate_chunk_index(chunk_index, total_chunks)
        session = self.registry.get_session(session_id)
        if total_chunks != session.declared_total_chunks:
            raise InvalidChunkIndex(
                f"totalChunks {total_chunks} does not match the declared {session.declared_total_chunks}"
            )

        with session.lock:
            if session.closed:
                raise StateInconsistency("Upload session was closed")
            if session.finalized:
                raise StateInconsistency("Upload has already been finalized")

            offset = self._start_offset(session, chunk_index)

            if self.disk_probe is not None and self.disk_probe.free_bytes() < self.min_disk_free:
                raise InsufficientStorage("Disk space ran out during upload")

            written = self._write_at(session, chunk_index, offset, stream)

            session.completed[chunk_index] = 1
            session.chunk_offsets[chunk_index] = offset
            session.bytes_written = offset + written
            self.registry.touch(session)
            progress = session.progress()

        if UPLOAD_BYTES is not None:
            UPLOAD_BYTES.inc(written)
        logger.debug(
            "Chunk %s/%s stored (%s bytes)",
            chunk_index + 1,
            total_chunks,
            written,
            extra={"video_id": session.video_id, "upload_id": session.session_id},
        )
        return progress

    def _start_offset(self, session: UploadSession, chunk_index: int) -> int:
        contiguous = session.contiguous_count()
        if chunk_index == 0:
            session.reset()
            return 0
        if chunk_index == contiguous:
            return session.bytes_written
        if chunk_index == contiguous - 1:
            # retry of the most recent chunk
            offset = session.chunk_offsets[chunk_index]
            session.completed[chunk_index] = 0
            session.bytes_written = offset
            return offset
        if chunk_index < contiguous:
            raise ChunkOutOfOrder(
                f"Chunk {chunk_index} was already committed; next expected chunk is {contiguous}"
            )
        raise ChunkOutOfOrder(f"Chunk {chunk_index} arrived before chunk {contiguous}")

    def _write_at(self, session: UploadSession, chunk_index: int, offset: int, stream) -> int:
        path = session.temp_file_path
        if chunk_index == 0:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            mode = "wb"
        else:
            if not os.path.exists(path):
                session.reset()
                raise FileMissing("Upload temp file is missing; restart from chunk 0")
            mode = "r+b"

        with open(path, mode) as handle:
            handle.seek(offset)
            handle.truncate()
            try:
                written = copy_stream_with_limit(stream, handle, self.max_chunk_size, self.buffer_size)
                if written == 0:
                    raise ValidationError("Empty chunk")
                if offset + written > session.declared_total_size:
                    raise ValidationError("Upload exceeds the declared file size")
                handle.flush()
                os.fsync(handle.fileno())
            except BaseException:
                handle.truncate(offset)
                raise
        return written

    def finalize(self, session_id: str, final_path: str) -> str:
        session = self.registry.get_session(session_id)
        with session.lock:
            if session.finalized:
                raise StateInconsistency("Upload has already been completed")
            missing = session.missing_chunks()
            if missing:
                raise IncompleteUpload(
                    f"Upload incomplete: {len(missing)} of {session.declared_total_chunks} chunks missing",
                    missing=missing,
                )
            if not os.path.exists(session.temp_file_path):
                raise FileMissing("Upload temp file is missing")

            actual_size = os.path.getsize(session.temp_file_path)
            if abs(actual_size - session.declared_total_size) > SIZE_MISMATCH_TOLERANCE:
                logger.warning(
                    "Assembled size %s differs from declared %s",
                    actual_size,
                    session.declared_total_size,
                    extra={"video_id": session.video_id, "upload_id": session.session_id},
                )

            move_file(session.temp_file_path, final_path)
            session.finalized = True
        logger.info(
            "Upload %s assembled at %s (%s bytes)",
            session.session_id,
            final_path,
            actual_size,
            extra={"video_id": session.video_id, "upload_id": session.session_id},
        )
        return final_path

    def cancel(self, session_id: str) -> None:
        session = self.registry.find(session_id)
        if session is None:
            return
        with session.lock:
            if not session.finalized:
                remove_file_quietly(session.temp_file_path)
            session.reset()

    def discard(self, session: UploadSession) -> None:
        """Delete the temp file of a session already dropped from the registry."""
        with session.lock:
            if not session.finalized:
                remove_file_quietly(session.temp_file_path)
