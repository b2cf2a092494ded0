from typing import Any, Callable, Dict, Mapping, Optional

from flask import jsonify, request
from flask.typing import ResponseReturnValue

from mediaops.errors import HTTP_STATUS, INTERNAL_ERROR, dispatch


def request_payload() -> Dict[str, Any]:
    payload = request.get_json(force=True, silent=True)
    if isinstance(payload, dict):
        return payload
    return dict(request.form.items())


def first_present(payload: Mapping[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def envelope_response(
    fn: Callable[..., Any],
    *args: Any,
    **kwargs: Any,
) -> ResponseReturnValue:
    envelope = dispatch(fn, *args, **kwargs)
    if envelope["success"]:
        return jsonify(envelope), 200
    code = envelope["error"].get("code", INTERNAL_ERROR)
    return jsonify(envelope), HTTP_STATUS.get(code, 500)
