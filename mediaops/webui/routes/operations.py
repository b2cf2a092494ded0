from typing import Any, Dict, Mapping

from flask import Blueprint, jsonify
from flask.typing import ResponseReturnValue

from mediaops.config import coerce_bool
from mediaops.errors import HTTP_STATUS, INTERNAL_ERROR, InvalidArgumentError, MediaNotFoundError, dispatch
from mediaops.splitting import ChapterSplit, DurationSplit, SplitStrategy
from mediaops.webui.routes.utils.common import envelope_response, first_present, request_payload
from mediaops.webui.routes.utils.service import get_launcher, get_registry

operations_bp = Blueprint("operations", __name__)


def _duration_seconds(payload: Mapping[str, Any]) -> float:
    seconds = first_present(payload, "maxDurationSeconds", "max_duration_seconds")
    minutes = first_present(payload, "maxDurationMinutes", "max_duration_minutes")
    try:
        if seconds is not None:
            return float(seconds)
        if minutes is not None:
            return float(minutes) * 60
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError("Maximum segment duration must be a number.") from exc
    raise InvalidArgumentError("maxDurationSeconds or maxDurationMinutes is required.")


def _start(strategy_factory, payload: Mapping[str, Any]) -> ResponseReturnValue:
    def _run() -> Dict[str, Any]:
        file_path = first_present(payload, "filePath", "file_path")
        if file_path is None or not str(file_path).strip():
            raise InvalidArgumentError("File path is required.")
        strategy: SplitStrategy = strategy_factory(payload)
        return get_launcher().start_split_job(str(file_path), strategy).as_dict()

    envelope = dispatch(_run)
    if not envelope["success"]:
        code = envelope["error"].get("code", INTERNAL_ERROR)
        return jsonify(envelope), HTTP_STATUS.get(code, 500)
    status = 202 if envelope["data"]["isNewOperation"] else 200
    return jsonify(envelope), status


@operations_bp.post("/split/chapters")
def split_by_chapters() -> ResponseReturnValue:
    payload = request_payload()
    return _start(
        lambda data: ChapterSplit(
            output_pattern=first_present(data, "outputPattern", "output_pattern"),
            preserve_metadata=coerce_bool(first_present(data, "preserveMetadata", "preserve_metadata"), True),
        ),
        payload,
    )


@operations_bp.post("/split/duration")
def split_by_duration() -> ResponseReturnValue:
    payload = request_payload()
    return _start(
        lambda data: DurationSplit(
            max_duration_seconds=_duration_seconds(data),
            output_pattern=first_present(data, "outputPattern", "output_pattern"),
            preserve_metadata=coerce_bool(first_present(data, "preserveMetadata", "preserve_metadata"), True),
        ),
        payload,
    )


@operations_bp.get("/operations")
def list_operations() -> ResponseReturnValue:
    return envelope_response(lambda: [progress.as_dict() for progress in get_registry().list_operations()])


@operations_bp.get("/operations/<operation_id>")
def get_operation(operation_id: str) -> ResponseReturnValue:
    def _lookup() -> Dict[str, Any]:
        progress = get_registry().get(operation_id)
        if progress is None:
            raise MediaNotFoundError(f"Operation {operation_id} not found.")
        return progress.as_dict()

    return envelope_response(_lookup)


@operations_bp.post("/operations/<operation_id>/cancel")
def cancel_operation(operation_id: str) -> ResponseReturnValue:
    def _cancel() -> Dict[str, Any]:
        if get_registry().get(operation_id) is None:
            raise MediaNotFoundError(f"Operation {operation_id} not found.")
        cancelled = get_launcher().cancel(operation_id)
        return {"operationId": operation_id, "cancelRequested": cancelled}

    return envelope_response(_cancel)
