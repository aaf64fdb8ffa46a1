from __future__ import annotations

from flask import Blueprint, jsonify, request

from ..middleware.rate_limit import limiter, upload_limit
from ..services.container import get_services
from ..utils.validation import is_valid_video_id

videos_bp = Blueprint("videos", __name__)


def _invalid_id():
    return jsonify({"error": "Invalid video id", "code": "validation_error"}), 400


@videos_bp.route("/api/videos/<video_id>", methods=["GET"])
def get_video(video_id: str):
    if not is_valid_video_id(video_id):
        return _invalid_id()
    services = get_services()
    video = services.videos.require_video(video_id)
    return jsonify(services.videos.to_dict(video))


@videos_bp.route("/api/videos/<video_id>", methods=["DELETE"])
def delete_video(video_id: str):
    if not is_valid_video_id(video_id):
        return _invalid_id()
    get_services().uploads.delete_video(video_id)
    return jsonify({"videoId": video_id, "deleted": True})


@videos_bp.route("/api/videos/<video_id>/transcode", methods=["POST"])
def retranscode_video(video_id: str):
    if not is_valid_video_id(video_id):
        return _invalid_id()
    services = get_services()
    video = services.uploads.retranscode(video_id)
    return jsonify(services.videos.to_dict(video)), 202


@videos_bp.route("/api/videos/<video_id>/cancel", methods=["POST"])
def cancel_transcode(video_id: str):
    if not is_valid_video_id(video_id):
        return _invalid_id()
    cancelled = get_services().uploads.cancel_transcode(video_id)
    return jsonify({"videoId": video_id, "cancelled": cancelled}), 202


@videos_bp.route("/api/videos/<video_id>/thumbnail", methods=["POST"])
@limiter.limit(upload_limit)
def upload_thumbnail(video_id: str):
    if not is_valid_video_id(video_id):
        return _invalid_id()
    file_storage = request.files.get("file")
    if file_storage is None:
        return jsonify({"error": "Missing file", "code": "validation_error"}), 400
    uploader_id = request.headers.get("X-Uploader-Id") or request.form.get("uploaderId")

    services = get_services()
    video = services.uploads.upload_thumbnail(video_id, file_storage, uploader_id=uploader_id)
    resp = jsonify(services.videos.to_dict(video))
    resp.headers["Cache-Control"] = "no-store"
    return resp
