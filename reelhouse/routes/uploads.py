from __future__ import annotations

from flask import Blueprint, jsonify, request

from ..middleware.rate_limit import limiter, upload_limit
from ..services.container import get_services
from ..utils.request import get_json_body
from ..utils.validation import is_valid_video_id, normalize_upload_id, parse_int_arg

uploads_bp = Blueprint("uploads", __name__)


def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _parse_tags(value) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        return []
    tags = []
    for item in value:
        tag = str(item).strip()
        if tag and tag not in tags:
            tags.append(tag[:64])
    return tags[:50]


@uploads_bp.route("/api/uploads/init", methods=["POST"])
@limiter.limit(upload_limit)
def init_upload():
    data = get_json_body()
    filename = data.get("filename") or data.get("fileName")
    if not filename:
        return jsonify({"error": "Missing filename", "code": "validation_error"}), 400
    total_size = parse_int_arg(data.get("totalSize", data.get("fileSize")), "totalSize", minimum=1)
    total_chunks = parse_int_arg(data.get("totalChunks"), "totalChunks", minimum=1)

    services = get_services()
    session = services.uploads.init_upload(
        filename,
        total_size,
        total_chunks,
        title=data.get("title"),
        description=str(data.get("description") or "")[:5000],
        tags=_parse_tags(data.get("tags")),
        uploader_id=data.get("uploaderId"),
        uploader_name=data.get("uploaderName"),
    )
    resp = jsonify(
        {
            "uploadId": session.session_id,
            "videoId": session.video_id,
            "totalChunks": session.declared_total_chunks,
            "maxChunkSize": services.settings.max_chunk_size,
        }
    )
    return _no_store(resp), 201


@uploads_bp.route("/api/uploads/<upload_id>", methods=["GET"])
def upload_status(upload_id: str):
    if not normalize_upload_id(upload_id):
        return jsonify({"error": "Invalid upload id", "code": "validation_error"}), 400
    session = get_services().uploads.get_session(upload_id)
    return _no_store(jsonify(session.to_dict()))


@uploads_bp.route("/api/uploads/<upload_id>/chunks/<int:index>", methods=["PUT", "POST"])
@limiter.limit(upload_limit)
def upload_chunk(upload_id: str, index: int):
    if not normalize_upload_id(upload_id):
        return jsonify({"error": "Invalid upload id", "code": "validation_error"}), 400
    total_chunks = parse_int_arg(
        request.args.get("totalChunks") or request.headers.get("X-Total-Chunks"),
        "totalChunks",
        minimum=1,
    )

    file_storage = request.files.get("file")
    stream = file_storage.stream if file_storage is not None else request.stream

    progress = get_services().uploads.upload_chunk(upload_id, index, total_chunks, stream)
    resp = jsonify(
        {
            "uploadId": upload_id,
            "chunkIndex": index,
            "progress": round(progress, 4),
            "complete": progress >= 1.0,
        }
    )
    return _no_store(resp)


@uploads_bp.route("/api/uploads/complete", methods=["POST"])
@limiter.limit(upload_limit)
def complete_upload():
    data = get_json_body()
    video_id = str(data.get("videoId") or "").strip()
    upload_id = str(data.get("uploadId") or "").strip()
    if video_id and not is_valid_video_id(video_id):
        return jsonify({"error": "Invalid video id", "code": "validation_error"}), 400
    if upload_id and not normalize_upload_id(upload_id):
        return jsonify({"error": "Invalid upload id", "code": "validation_error"}), 400
    if not video_id and not upload_id:
        return jsonify({"error": "Missing videoId", "code": "validation_error"}), 400

    services = get_services()
    video = services.uploads.complete_upload(video_id or None, session_id=upload_id or None)
    return _no_store(jsonify(services.videos.to_dict(video))), 202


@uploads_bp.route("/api/uploads/<upload_id>", methods=["DELETE"])
def cancel_upload(upload_id: str):
    if not normalize_upload_id(upload_id):
        return jsonify({"error": "Invalid upload id", "code": "validation_error"}), 400
    get_services().uploads.cancel_upload(upload_id)
    return _no_store(jsonify({"uploadId": upload_id, "cancelled": True}))
