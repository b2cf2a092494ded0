from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

import static_ffmpeg

from mediaops.errors import MediaProbeError
from mediaops.utils import create_process, get_internal_cache_path

if TYPE_CHECKING:  # pragma: no cover
    from mediaops.splitting import SplitStep

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS: List[str] = ["mp3", "wav", "flac", "aac", "ogg", "m4a", "m4b", "wma", "opus", "mp4", "mkv"]

_POLL_INTERVAL = 0.1
_ffmpeg_paths_ready = False
_ffmpeg_paths_lock = threading.Lock()


@dataclass
class ChapterInfo:
    index: int
    start_seconds: float
    end_seconds: float
    title: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        return max(0.0, self.end_seconds - self.start_seconds)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "startTime": self.start_seconds,
            "endTime": self.end_seconds,
            "title": self.title,
            "metadata": dict(self.metadata),
        }


@dataclass
class MediaInfo:
    file_path: str
    file_name: str
    duration: float = 0.0
    format_name: Optional[str] = None
    file_size_bytes: int = 0
    metadata: Dict[str, str] = field(default_factory=dict)
    chapters: List[ChapterInfo] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "filePath": self.file_path,
            "fileName": self.file_name,
            "duration": self.duration,
            "format": self.format_name,
            "fileSizeBytes": self.file_size_bytes,
            "metadata": dict(self.metadata),
            "chapters": [chapter.as_dict() for chapter in self.chapters],
        }


@dataclass
class StepResult:
    success: bool
    output_path: Optional[str] = None
    error: Optional[str] = None


def format_timestamp(seconds: float) -> str:
    total_ms = int(round(max(0.0, float(seconds)) * 1000))
    hours, remainder = divmod(total_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    secs, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _string_tags(tags: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    return {str(key): str(value) for key, value in (tags or {}).items() if value is not None}


def parse_ffprobe_payload(payload: Mapping[str, Any], file_path: str, *, file_size: int = 0) -> MediaInfo:
    fmt = payload.get("format") or {}
    chapters: List[ChapterInfo] = []
    for position, entry in enumerate(payload.get("chapters") or [], start=1):
        tags = _string_tags(entry.get("tags"))
        title = tags.pop("title", "") or f"Chapter {position}"
        chapters.append(
            ChapterInfo(
                index=position,
                start_seconds=_as_float(entry.get("start_time")),
                end_seconds=_as_float(entry.get("end_time")),
                title=title,
                metadata=tags,
            )
        )

    size = fmt.get("size")
    return MediaInfo(
        file_path=file_path,
        file_name=os.path.basename(file_path),
        duration=_as_float(fmt.get("duration")),
        format_name=fmt.get("format_name"),
        file_size_bytes=int(_as_float(size, file_size)) if size is not None else file_size,
        metadata=_string_tags(fmt.get("tags")),
        chapters=chapters,
    )


def probe_media(file_path: str, *, ffprobe: str = "ffprobe") -> Optional[MediaInfo]:
    """Read duration, tags and chapters of ``file_path`` with ffprobe.

    Returns ``None`` when the file does not exist.
    """

    path = Path(file_path)
    if not path.is_file():
        logger.warning("File not found: %s", file_path)
        return None

    cmd = [
        ffprobe,
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_format",
        "-show_chapters",
        str(path),
    ]
    try:
        process = create_process(cmd, capture_output=True)
        stdout, stderr = process.communicate()
    except OSError as exc:
        raise MediaProbeError(f"Unable to run ffprobe: {exc}") from exc

    if process.returncode != 0:
        message = (stderr or "").strip() or f"exit code {process.returncode}"
        raise MediaProbeError(f"ffprobe failed for {file_path}: {message}")

    try:
        payload = json.loads(stdout or "{}")
    except json.JSONDecodeError as exc:
        raise MediaProbeError(f"ffprobe returned invalid JSON for {file_path}: {exc}") from exc

    info = parse_ffprobe_payload(payload, str(path), file_size=path.stat().st_size)
    logger.info("Probed %s: %.3fs, %d chapter(s)", file_path, info.duration, len(info.chapters))
    return info


def build_step_command(
    source: str,
    start_seconds: float,
    duration_seconds: Optional[float],
    output_path: str,
    *,
    ffmpeg: str = "ffmpeg",
    preserve_metadata: bool = True,
) -> List[str]:
    command: List[str] = [ffmpeg, "-y", "-ss", format_timestamp(start_seconds), "-i", str(source)]
    if duration_seconds is not None:
        command += ["-t", format_timestamp(duration_seconds)]
    if preserve_metadata:
        command += ["-map_metadata", "0"]
    else:
        command += ["-map_metadata", "-1"]
    command += ["-map_chapters", "-1", "-c", "copy", str(output_path)]
    return command


def _terminate(process: "subprocess.Popen") -> None:
    process.kill()
    try:
        process.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning("ffmpeg process %s did not exit after kill", process.pid)


class FfmpegStepExecutor:
    """Cut one time range of a source file into its own output with ``ffmpeg -c copy``."""

    def __init__(
        self,
        ffmpeg: str = "ffmpeg",
        *,
        step_timeout: Optional[float] = None,
    ) -> None:
        self.ffmpeg = ffmpeg
        self.step_timeout = step_timeout

    def __call__(
        self,
        source: str,
        step: "SplitStep",
        cancel_event: Optional[threading.Event] = None,
    ) -> StepResult:
        output_path = str(step.output_path)
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        command = build_step_command(
            source,
            step.start_seconds,
            step.duration_seconds,
            output_path,
            ffmpeg=self.ffmpeg,
            preserve_metadata=step.preserve_metadata,
        )
        try:
            process = create_process(command, capture_output=True)
        except OSError as exc:
            return StepResult(success=False, output_path=output_path, error=f"Unable to run ffmpeg: {exc}")

        deadline = time.monotonic() + self.step_timeout if self.step_timeout else None
        while True:
            try:
                _stdout, stderr = process.communicate(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    _terminate(process)
                    return StepResult(success=False, output_path=output_path, error="Step cancelled")
                if deadline is not None and time.monotonic() > deadline:
                    _terminate(process)
                    return StepResult(
                        success=False,
                        output_path=output_path,
                        error=f"Step timed out after {self.step_timeout:g}s",
                    )

        if process.returncode != 0:
            tail = " | ".join((stderr or "").strip().splitlines()[-3:])
            error = f"ffmpeg exited with code {process.returncode}"
            if tail:
                error = f"{error}: {tail}"
            return StepResult(success=False, output_path=output_path, error=error)
        if not os.path.exists(output_path):
            return StepResult(success=False, output_path=output_path, error="ffmpeg produced no output file")
        return StepResult(success=True, output_path=output_path)


def ensure_ffmpeg_paths() -> None:
    """Put the static-ffmpeg binaries on PATH unless a system ffmpeg already is."""

    global _ffmpeg_paths_ready
    with _ffmpeg_paths_lock:
        if _ffmpeg_paths_ready:
            return
        ffmpeg_cache_root = get_internal_cache_path("ffmpeg")
        platform_cache = os.path.join(ffmpeg_cache_root, sys.platform)
        os.makedirs(platform_cache, exist_ok=True)
        try:
            import static_ffmpeg.run as static_ffmpeg_run  # type: ignore

            static_ffmpeg_run.LOCK_FILE = os.path.join(ffmpeg_cache_root, "lock.file")
        except (ImportError, AttributeError):
            logger.debug("static_ffmpeg.run lock file override unavailable")

        static_ffmpeg.add_paths(weak=True, download_dir=platform_cache)
        _ffmpeg_paths_ready = True


def is_ffmpeg_available(ffmpeg: str = "ffmpeg") -> bool:
    try:
        process = create_process([ffmpeg, "-version"], capture_output=True)
    except OSError:
        return False
    try:
        process.communicate(timeout=10)
    except subprocess.TimeoutExpired:
        _terminate(process)
        return False
    return process.returncode == 0


def get_supported_formats() -> List[str]:
    return list(SUPPORTED_FORMATS)
