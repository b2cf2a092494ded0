from typing import Any, Dict

from flask import Blueprint, request
from flask.typing import ResponseReturnValue

from mediaops.errors import InvalidArgumentError, MediaNotFoundError
from mediaops.media import MediaInfo, get_supported_formats, is_ffmpeg_available
from mediaops.webui.routes.utils.common import envelope_response
from mediaops.webui.routes.utils.service import get_media_probe, get_settings

media_bp = Blueprint("media", __name__)


def _probe_requested_file() -> MediaInfo:
    file_path = (request.args.get("filePath") or "").strip()
    if not file_path:
        raise InvalidArgumentError("File path is required.")
    info = get_media_probe()(file_path)
    if info is None:
        raise MediaNotFoundError("Audio file not found.", file_path)
    return info


@media_bp.get("/media/info")
def media_info() -> ResponseReturnValue:
    return envelope_response(lambda: _probe_requested_file().as_dict())


@media_bp.get("/media/chapters")
def media_chapters() -> ResponseReturnValue:
    def _chapters() -> Dict[str, Any]:
        info = _probe_requested_file()
        return {
            "filePath": info.file_path,
            "hasChapters": bool(info.chapters),
            "chapterCount": len(info.chapters),
            "chapters": [chapter.as_dict() for chapter in info.chapters],
        }

    return envelope_response(_chapters)


@media_bp.get("/system/ffmpeg")
def ffmpeg_status() -> ResponseReturnValue:
    settings = get_settings()
    return envelope_response(
        lambda: {
            "available": is_ffmpeg_available(settings.ffmpeg_binary),
            "supportedFormats": get_supported_formats(),
        }
    )
