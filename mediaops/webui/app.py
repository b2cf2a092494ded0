from __future__ import annotations

import atexit
import logging
import os
from functools import partial
from typing import Any, Optional

from flask import Flask

from mediaops.config import Settings, load_settings
from mediaops.media import FfmpegStepExecutor, ensure_ffmpeg_paths, probe_media
from mediaops.operations import OperationRegistry
from mediaops.splitting import MediaProbe, SplitJobLauncher, StepExecutor

logger = logging.getLogger(__name__)


class _SuppressSuccessfulAccessFilter(logging.Filter):
    """Filter out successful (2xx) werkzeug access logs; progress polling is noisy."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - small utility
        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover
            return True
        return " 200 " not in message and " 202 " not in message and " 204 " not in message


_access_log_filter_attached = False


def build_launcher(
    settings: Settings,
    *,
    media_probe: Optional[MediaProbe] = None,
    step_executor: Optional[StepExecutor] = None,
    registry: Optional[OperationRegistry] = None,
) -> SplitJobLauncher:
    registry = registry or OperationRegistry(
        retention_seconds=settings.retention_seconds,
        max_records=settings.max_records,
    )
    return SplitJobLauncher(
        registry,
        media_probe or partial(probe_media, ffprobe=settings.ffprobe_binary),
        step_executor or FfmpegStepExecutor(settings.ffmpeg_binary, step_timeout=settings.step_timeout),
        max_workers=settings.max_workers,
    )


def create_app(
    config: Optional[dict[str, Any]] = None,
    *,
    media_probe: Optional[MediaProbe] = None,
    step_executor: Optional[StepExecutor] = None,
) -> Flask:
    app = Flask(__name__)
    base_config: dict[str, Any] = {"MEDIAOPS": {}}
    if config:
        base_config.update(config)
    app.config.update(base_config)

    settings = load_settings(app.config.get("MEDIAOPS") or {})
    if settings.use_static_ffmpeg and media_probe is None and step_executor is None:
        ensure_ffmpeg_paths()

    probe = media_probe or partial(probe_media, ffprobe=settings.ffprobe_binary)
    launcher = build_launcher(settings, media_probe=probe, step_executor=step_executor)
    app.extensions["mediaops_settings"] = settings
    app.extensions["media_probe"] = probe
    app.extensions["operation_registry"] = launcher.registry
    app.extensions["split_launcher"] = launcher

    from mediaops.webui.routes import media_bp, operations_bp

    app.register_blueprint(operations_bp, url_prefix="/api")
    app.register_blueprint(media_bp, url_prefix="/api")

    atexit.register(launcher.shutdown, False)

    global _access_log_filter_attached
    if not _access_log_filter_attached:
        logging.getLogger("werkzeug").addFilter(_SuppressSuccessfulAccessFilter())
        _access_log_filter_attached = True

    return app


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    app = create_app()
    host = os.environ.get("MEDIAOPS_HOST", "127.0.0.1")
    port = int(os.environ.get("MEDIAOPS_PORT", "8809"))
    debug = os.environ.get("MEDIAOPS_DEBUG", "false").lower() == "true"
    logger.info("Starting mediaops on %s:%s", host, port)
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":  # pragma: no cover
    main()
