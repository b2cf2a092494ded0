from __future__ import annotations

import logging
import math
import os
import re
import threading
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from mediaops.errors import InvalidArgumentError, InvalidConfigurationError, MediaNotFoundError
from mediaops.media import MediaInfo, StepResult
from mediaops.operation_key import OperationKey
from mediaops.operations import (
    OperationProgressUpdate,
    OperationRegistry,
    OperationResult,
    OperationStartResult,
    ProgressReporter,
)

logger = logging.getLogger(__name__)

SPLIT_BY_CHAPTERS = "split-by-chapters"
SPLIT_BY_DURATION = "split-by-duration"

MAX_SPLIT_STEPS = 10_000

_INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]+')

MediaProbe = Callable[[str], Optional[MediaInfo]]
StepExecutor = Callable[[str, "SplitStep", Optional[threading.Event]], StepResult]


def sanitize_filename(name: str) -> str:
    parts = [part for part in _INVALID_FILENAME_CHARS.split(name or "") if part]
    return "_".join(parts)


@dataclass(frozen=True)
class SplitStep:
    index: int
    start_seconds: float
    duration_seconds: float
    output_path: str
    description: str
    title: str = ""
    preserve_metadata: bool = True


def _render_output_path(
    source: str,
    *,
    default_name: str,
    pattern: Optional[str],
    replacements: Dict[str, str],
    output_dir: Optional[str] = None,
) -> str:
    directory = output_dir or os.path.dirname(os.path.abspath(source))
    stem, extension = os.path.splitext(os.path.basename(source))
    if pattern:
        name = pattern.replace("{filename}", stem)
        for placeholder, value in replacements.items():
            name = name.replace("{" + placeholder + "}", value)
    else:
        name = default_name
    return os.path.join(directory, f"{name}{extension}")


@dataclass(frozen=True)
class ChapterSplit:
    """One step per chapter, in chapter order."""

    output_pattern: Optional[str] = None
    preserve_metadata: bool = True
    output_dir: Optional[str] = None

    kind = SPLIT_BY_CHAPTERS

    def options(self) -> Dict[str, Any]:
        return {
            "splitByChapters": True,
            "outputPattern": self.output_pattern,
            "preserveMetadata": self.preserve_metadata,
            "outputDir": self.output_dir,
        }

    def count_steps(self, media: MediaInfo) -> int:
        return len(media.chapters)

    def build_steps(self, source: str, media: MediaInfo) -> List[SplitStep]:
        stem = os.path.splitext(os.path.basename(source))[0]
        total = len(media.chapters)
        steps: List[SplitStep] = []
        for number, chapter in enumerate(media.chapters, start=1):
            title = chapter.title or f"Chapter {number}"
            safe_title = sanitize_filename(title)
            steps.append(
                SplitStep(
                    index=number,
                    start_seconds=chapter.start_seconds,
                    duration_seconds=chapter.duration_seconds,
                    output_path=_render_output_path(
                        source,
                        default_name=f"{stem}_Chapter{number:02d}_{safe_title}",
                        pattern=self.output_pattern,
                        replacements={"chapter": f"{number:02d}", "title": safe_title},
                        output_dir=self.output_dir,
                    ),
                    description=f"Processing chapter {number} of {total}: {title}",
                    title=title,
                    preserve_metadata=self.preserve_metadata,
                )
            )
        return steps


@dataclass(frozen=True)
class DurationSplit:
    """Fixed-length segments; the last one takes whatever remains."""

    max_duration_seconds: float
    output_pattern: Optional[str] = None
    preserve_metadata: bool = True
    output_dir: Optional[str] = None

    kind = SPLIT_BY_DURATION

    def __post_init__(self) -> None:
        try:
            value = float(self.max_duration_seconds)
        except (TypeError, ValueError) as exc:
            raise InvalidArgumentError("Maximum segment duration must be a number.") from exc
        if not math.isfinite(value) or value <= 0:
            raise InvalidArgumentError("Maximum segment duration must be greater than zero.")

    def options(self) -> Dict[str, Any]:
        return {
            "maxDurationSeconds": self.max_duration_seconds,
            "outputPattern": self.output_pattern,
            "preserveMetadata": self.preserve_metadata,
            "outputDir": self.output_dir,
        }

    def count_steps(self, media: MediaInfo) -> int:
        if media.duration <= 0:
            return 0
        count = media.duration / float(self.max_duration_seconds)
        if not math.isfinite(count) or count > MAX_SPLIT_STEPS:
            raise InvalidConfigurationError(
                f"Segment length {float(self.max_duration_seconds):g}s would produce more than {MAX_SPLIT_STEPS} parts."
            )
        return int(math.ceil(count))

    def build_steps(self, source: str, media: MediaInfo) -> List[SplitStep]:
        stem = os.path.splitext(os.path.basename(source))[0]
        segment = float(self.max_duration_seconds)
        total = self.count_steps(media)
        steps: List[SplitStep] = []
        for number in range(1, total + 1):
            start = (number - 1) * segment
            duration = media.duration - start if number == total else segment
            steps.append(
                SplitStep(
                    index=number,
                    start_seconds=start,
                    duration_seconds=duration,
                    output_path=_render_output_path(
                        source,
                        default_name=f"{stem}_Part{number:02d}",
                        pattern=self.output_pattern,
                        replacements={"segment": f"{number:02d}"},
                        output_dir=self.output_dir,
                    ),
                    description=f"Creating segment {number} of {total}",
                    preserve_metadata=self.preserve_metadata,
                )
            )
        return steps


SplitStrategy = Union[ChapterSplit, DurationSplit]


def run_split_operation(
    operation_id: str,
    source: str,
    steps: List[SplitStep],
    reporter: ProgressReporter,
    step_executor: StepExecutor,
    cancel_event: Optional[threading.Event] = None,
) -> OperationResult:
    """Execute ``steps`` in order and publish progress for ``operation_id``.

    A failed step is logged and skipped. The operation completes successfully
    when at least one step produced an output file. Unexpected exceptions and
    cancellation are reported as terminal states rather than raised.
    """

    total = len(steps)
    output_files: List[str] = []
    try:
        for step in sorted(steps, key=lambda item: item.index):
            if cancel_event is not None and cancel_event.is_set():
                message = f"Operation cancelled after {step.index - 1} of {total} steps"
                reporter.report_cancelled(operation_id, message, output_files)
                return OperationResult(success=False, message=message, output_files=output_files)

            reporter.report_progress(
                OperationProgressUpdate(
                    operation_id=operation_id,
                    current_step=step.index - 1,
                    total_steps=total,
                    current_operation=step.description,
                    additional_data={"currentStepIndex": step.index},
                )
            )

            result = step_executor(source, step, cancel_event)
            if not result.success and cancel_event is not None and cancel_event.is_set():
                # the executor stopped this step because of the cancel request
                message = f"Operation cancelled during step {step.index} of {total}"
                reporter.report_cancelled(operation_id, message, output_files)
                return OperationResult(success=False, message=message, output_files=output_files)
            if result.success:
                output_files.append(result.output_path or step.output_path)
            else:
                logger.warning(
                    "Operation %s: step %d of %d failed (%s): %s",
                    operation_id,
                    step.index,
                    total,
                    step.output_path,
                    result.error or "unknown error",
                )

            reporter.report_progress(
                OperationProgressUpdate(
                    operation_id=operation_id,
                    current_step=step.index,
                    total_steps=total,
                    current_operation=step.description,
                    additional_data={
                        "filesCreated": len(output_files),
                        "lastStepSucceeded": result.success,
                    },
                )
            )

        if output_files:
            outcome = OperationResult(
                success=True,
                message=f"File split into {len(output_files)} parts",
                output_files=output_files,
            )
        else:
            outcome = OperationResult(success=False, message="No parts were created", output_files=[])
        reporter.report_completion(operation_id, outcome)
        return outcome
    except Exception as exc:
        logger.error(
            "Operation %s crashed:\n%s",
            operation_id,
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )
        message = f"{exc.__class__.__name__}: {exc}"
        reporter.report_error(operation_id, message)
        return OperationResult(success=False, message=message, output_files=output_files, error_details=str(exc))


class SplitJobLauncher:
    """Validate split requests, deduplicate them and run new ones in the background."""

    def __init__(
        self,
        registry: OperationRegistry,
        media_probe: MediaProbe,
        step_executor: StepExecutor,
        *,
        max_workers: int = 4,
    ) -> None:
        self._registry = registry
        self._media_probe = media_probe
        self._step_executor = step_executor
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="mediaops-split")
        self._futures: Dict[str, Future] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.RLock()

    @property
    def registry(self) -> OperationRegistry:
        return self._registry

    def start_split_job(self, file_path: str, strategy: SplitStrategy) -> OperationStartResult:
        if file_path is None or not str(file_path).strip():
            raise InvalidArgumentError("File path is required.")
        source = os.path.abspath(os.path.expanduser(str(file_path).strip()))
        if not os.path.isfile(source):
            raise MediaNotFoundError("Audio file not found.", str(file_path))

        media = self._media_probe(source)
        if media is None:
            raise MediaNotFoundError("Audio file not found.", str(file_path))

        total_steps = strategy.count_steps(media)
        if total_steps <= 0:
            if strategy.kind == SPLIT_BY_CHAPTERS:
                raise InvalidConfigurationError("The file has no chapters to split by.")
            raise InvalidConfigurationError("The file has no duration to split.")

        key = OperationKey(file_path=source, operation_type=strategy.kind, options=strategy.options())
        description = f"Splitting {os.path.basename(source)} into {total_steps} parts"
        with self._lock:
            # holding the launcher lock keeps "new operation" and "worker submitted" together
            result = self._registry.start_with_deduplication(key, total_steps, description)
            if result.is_new_operation:
                steps = strategy.build_steps(source, media)
                self._submit_locked(result.operation_id, source, steps)
        return result

    def cancel(self, operation_id: str) -> bool:
        with self._lock:
            event = self._cancel_events.get(operation_id)
        if event is None:
            return False
        progress = self._registry.get(operation_id)
        if progress is None or progress.is_terminal:
            return False
        event.set()
        logger.info("Cancellation requested for operation %s", operation_id)
        return True

    def wait(self, operation_id: str, timeout: Optional[float] = None) -> Optional[OperationResult]:
        with self._lock:
            future = self._futures.get(operation_id)
        if future is None:
            return None
        return future.result(timeout=timeout)

    def active_operations(self) -> List[str]:
        with self._lock:
            return [operation_id for operation_id, future in self._futures.items() if not future.done()]

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            events = list(self._cancel_events.values())
        for event in events:
            event.set()
        self._executor.shutdown(wait=wait)

    # Internal -----------------------------------------------------------
    def _submit_locked(self, operation_id: str, source: str, steps: List[SplitStep]) -> None:
        self._prune_futures_locked()
        cancel_event = threading.Event()
        try:
            future = self._executor.submit(
                run_split_operation,
                operation_id,
                source,
                steps,
                self._registry,
                self._step_executor,
                cancel_event,
            )
        except RuntimeError as exc:
            self._registry.report_error(operation_id, f"Unable to schedule operation: {exc}")
            raise
        self._futures[operation_id] = future
        self._cancel_events[operation_id] = cancel_event
        future.add_done_callback(lambda done, oid=operation_id: self._on_done(oid, done))

    def _on_done(self, operation_id: str, future: Future) -> None:
        with self._lock:
            self._cancel_events.pop(operation_id, None)
        if future.cancelled():
            self._registry.report_cancelled(operation_id, "Operation cancelled before it started")
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Split worker for operation %s escaped with %r", operation_id, exc)
            self._registry.report_error(operation_id, f"{exc.__class__.__name__}: {exc}")
            return
        progress = self._registry.get(operation_id)
        if progress is not None and not progress.is_terminal:
            logger.error("Split worker for operation %s finished without a terminal state", operation_id)
            self._registry.report_error(operation_id, "Worker exited without reporting completion")

    def _prune_futures_locked(self) -> None:
        # finished futures stay waitable for as long as the registry keeps their record
        for operation_id, future in list(self._futures.items()):
            if future.done() and self._registry.get(operation_id) is None:
                del self._futures[operation_id]
