from __future__ import annotations

import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from mediaops.operation_key import OperationKey


_OPERATION_LOGGER = logging.getLogger("mediaops.operations")
if not _OPERATION_LOGGER.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"))
    _OPERATION_LOGGER.addHandler(handler)
    _OPERATION_LOGGER.propagate = False
_OPERATION_LOGGER.setLevel(logging.DEBUG)

_LEVEL_MAP: Dict[str, int] = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "success": logging.INFO,
    "debug": logging.DEBUG,
}

DUPLICATE_MESSAGE = "Operation already running with the same parameters"
NEW_OPERATION_MESSAGE = "New operation started"


def _emit_operation_log(operation_id: str, level: str, message: str) -> None:
    log_level = _LEVEL_MAP.get((level or "info").lower(), logging.INFO)
    try:
        _OPERATION_LOGGER.log(log_level, "[operation %s] %s", operation_id, message)
    except Exception:
        # Logging failures must never disrupt a running operation.
        try:
            sys.stderr.write(f"Logging failed for operation {operation_id}: {message}\n")
            traceback.print_exc(file=sys.stderr)
        except Exception:
            pass


def _isoformat(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class OperationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({OperationStatus.PENDING, OperationStatus.RUNNING})
TERMINAL_STATUSES = frozenset({OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CANCELLED})


@dataclass(frozen=True)
class OperationProgress:
    operation_id: str
    operation_type: str
    status: OperationStatus = OperationStatus.PENDING
    current_step: int = 0
    total_steps: int = 0
    current_operation: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    estimated_time_remaining: Optional[float] = None
    error_message: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    output_files: Tuple[str, ...] = ()

    @property
    def percent_complete(self) -> float:
        if self.total_steps <= 0:
            return 0.0
        return self.current_step / self.total_steps * 100

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def as_dict(self) -> Dict[str, Any]:
        return {
            "operationId": self.operation_id,
            "operationType": self.operation_type,
            "status": self.status.value,
            "currentStep": self.current_step,
            "totalSteps": self.total_steps,
            "currentOperation": self.current_operation,
            "percentComplete": round(self.percent_complete, 2),
            "startTime": _isoformat(self.start_time),
            "endTime": _isoformat(self.end_time),
            "estimatedTimeRemaining": self.estimated_time_remaining,
            "errorMessage": self.error_message,
            "metadata": dict(self.metadata),
            "outputFiles": list(self.output_files),
        }


@dataclass
class OperationProgressUpdate:
    operation_id: str
    current_step: int
    total_steps: int
    current_operation: str = ""
    additional_data: Optional[Dict[str, Any]] = None


@dataclass
class OperationResult:
    success: bool
    message: str = ""
    output_files: List[str] = field(default_factory=list)
    error_details: Optional[str] = None


@dataclass(frozen=True)
class OperationStartResult:
    operation_id: str
    is_new_operation: bool
    message: str
    total_steps: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "operationId": self.operation_id,
            "isNewOperation": self.is_new_operation,
            "message": self.message,
            "totalSteps": self.total_steps,
        }


class ProgressReporter(Protocol):
    def report_progress(self, update: OperationProgressUpdate) -> None: ...

    def report_error(self, operation_id: str, message: str) -> None: ...

    def report_completion(self, operation_id: str, result: OperationResult) -> None: ...

    def report_cancelled(
        self, operation_id: str, message: str = ..., output_files: Optional[List[str]] = ...
    ) -> None: ...

    def get_progress(self, operation_id: str) -> Optional[OperationProgress]: ...


class NullProgressReporter:
    """Reporter that accepts every call and tracks nothing."""

    def report_progress(self, update: OperationProgressUpdate) -> None:
        return None

    def report_error(self, operation_id: str, message: str) -> None:
        return None

    def report_completion(self, operation_id: str, result: OperationResult) -> None:
        return None

    def report_cancelled(
        self, operation_id: str, message: str = "Operation cancelled", output_files: Optional[List[str]] = None
    ) -> None:
        return None

    def get_progress(self, operation_id: str) -> Optional[OperationProgress]:
        return None


ProgressListener = Callable[[OperationProgressUpdate], None]


class OperationRegistry:
    """In-memory store of operation progress with request deduplication.

    ``_operations`` maps operation id to an immutable ``OperationProgress``
    snapshot; ``_key_to_id`` maps a key digest to the id of the operation
    currently doing that work. Both maps change only under ``_lock`` and every
    update swaps in a new snapshot, so readers never observe a partial record.
    Terminal records are kept for ``retention_seconds`` and the table is capped
    at ``max_records`` (oldest terminal records go first).
    """

    def __init__(
        self,
        *,
        retention_seconds: Optional[float] = 3600.0,
        max_records: Optional[int] = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._operations: Dict[str, OperationProgress] = {}
        self._key_to_id: Dict[str, str] = {}
        self._id_to_key: Dict[str, str] = {}
        self._listeners: List[ProgressListener] = []
        self._lock = threading.RLock()
        self._retention_seconds = retention_seconds
        self._max_records = max_records
        self._clock = clock

    # Public API ---------------------------------------------------------
    def start_operation(self, operation_type: str, total_steps: int, description: str = "") -> str:
        with self._lock:
            self._purge_locked(self._clock())
            progress = self._create_locked(operation_type, total_steps, description)
        _emit_operation_log(progress.operation_id, "info", f"Started operation of type {operation_type}")
        return progress.operation_id

    def start_with_deduplication(
        self,
        key: OperationKey,
        total_steps: int,
        description: str = "",
    ) -> OperationStartResult:
        key_hash = key.digest()
        with self._lock:
            self._purge_locked(self._clock())
            existing_id = self._key_to_id.get(key_hash)
            existing = self._operations.get(existing_id) if existing_id else None
            if existing is not None and existing.status in ACTIVE_STATUSES:
                result = OperationStartResult(
                    operation_id=existing.operation_id,
                    is_new_operation=False,
                    message=DUPLICATE_MESSAGE,
                    total_steps=existing.total_steps,
                )
            else:
                if existing_id is not None:
                    # stale mapping to a finished (or evicted) operation
                    self._key_to_id.pop(key_hash, None)
                    self._id_to_key.pop(existing_id, None)
                progress = self._create_locked(key.operation_type, total_steps, description)
                self._key_to_id[key_hash] = progress.operation_id
                self._id_to_key[progress.operation_id] = key_hash
                result = OperationStartResult(
                    operation_id=progress.operation_id,
                    is_new_operation=True,
                    message=NEW_OPERATION_MESSAGE,
                    total_steps=progress.total_steps,
                )

        if result.is_new_operation:
            _emit_operation_log(result.operation_id, "info", f"Started new operation with key hash {key_hash}")
        else:
            _emit_operation_log(result.operation_id, "info", f"Found existing operation for key hash {key_hash}")
        return result

    def report_progress(self, update: OperationProgressUpdate) -> None:
        with self._lock:
            progress = self._operations.get(update.operation_id)
            if progress is None or progress.is_terminal:
                updated = None
            else:
                total_steps = max(int(update.total_steps), progress.current_step, 0)
                current_step = min(max(int(update.current_step), progress.current_step), total_steps)
                metadata = dict(progress.metadata)
                if update.additional_data:
                    metadata.update(update.additional_data)
                updated = replace(
                    progress,
                    status=OperationStatus.RUNNING,
                    current_step=current_step,
                    total_steps=total_steps,
                    current_operation=update.current_operation,
                    metadata=MappingProxyType(metadata),
                    estimated_time_remaining=self._estimate_remaining(
                        progress.start_time, current_step, total_steps, progress.estimated_time_remaining
                    ),
                )
                self._operations[update.operation_id] = updated

        if updated is None:
            _OPERATION_LOGGER.debug("Ignoring progress for unknown or finished operation %s", update.operation_id)
            return
        _OPERATION_LOGGER.debug(
            "[operation %s] %s/%s - %s",
            update.operation_id,
            updated.current_step,
            updated.total_steps,
            updated.current_operation,
        )
        self._notify(update)

    def report_error(self, operation_id: str, message: str) -> None:
        if self._finish(operation_id, OperationStatus.FAILED, error_message=message):
            _emit_operation_log(operation_id, "error", f"Operation failed: {message}")

    def report_completion(self, operation_id: str, result: OperationResult) -> None:
        status = OperationStatus.COMPLETED if result.success else OperationStatus.FAILED
        finished = self._finish(
            operation_id,
            status,
            error_message=None if result.success else (result.message or result.error_details),
            output_files=tuple(str(path) for path in result.output_files),
            complete_steps=True,
        )
        if finished:
            level = "success" if result.success else "error"
            _emit_operation_log(operation_id, level, f"Operation completed with status {status.value}")

    def report_cancelled(
        self,
        operation_id: str,
        message: str = "Operation cancelled",
        output_files: Optional[List[str]] = None,
    ) -> None:
        finished = self._finish(
            operation_id,
            OperationStatus.CANCELLED,
            error_message=message,
            output_files=tuple(str(path) for path in output_files or ()),
        )
        if finished:
            _emit_operation_log(operation_id, "warning", message)

    def get(self, operation_id: str) -> Optional[OperationProgress]:
        with self._lock:
            return self._operations.get(operation_id)

    get_progress = get

    def list_operations(self) -> List[OperationProgress]:
        with self._lock:
            return sorted(self._operations.values(), key=lambda item: item.start_time, reverse=True)

    def subscribe(self, listener: ProgressListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ProgressListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def purge_expired(self, now: Optional[float] = None) -> int:
        with self._lock:
            return self._purge_locked(self._clock() if now is None else now)

    def __len__(self) -> int:
        with self._lock:
            return len(self._operations)

    # Internal -----------------------------------------------------------
    def _create_locked(self, operation_type: str, total_steps: int, description: str) -> OperationProgress:
        operation_id = str(uuid.uuid4())
        progress = OperationProgress(
            operation_id=operation_id,
            operation_type=operation_type,
            status=OperationStatus.PENDING,
            current_step=0,
            total_steps=max(0, int(total_steps)),
            current_operation=description,
            start_time=self._clock(),
        )
        self._operations[operation_id] = progress
        return progress

    def _finish(
        self,
        operation_id: str,
        status: OperationStatus,
        *,
        error_message: Optional[str] = None,
        output_files: Optional[Tuple[str, ...]] = None,
        complete_steps: bool = False,
    ) -> bool:
        with self._lock:
            progress = self._operations.get(operation_id)
            if progress is None or progress.is_terminal:
                return False
            changes: Dict[str, Any] = {
                "status": status,
                "end_time": self._clock(),
                "error_message": error_message,
                "estimated_time_remaining": None if status is not OperationStatus.COMPLETED else 0.0,
            }
            if output_files is not None:
                changes["output_files"] = output_files
            if complete_steps:
                changes["current_step"] = progress.total_steps
            self._operations[operation_id] = replace(progress, **changes)
            self._unlink_key_locked(operation_id)
        _OPERATION_LOGGER.debug("Cleaned up operation key mapping for %s", operation_id)
        return True

    def _unlink_key_locked(self, operation_id: str) -> None:
        key_hash = self._id_to_key.pop(operation_id, None)
        if key_hash is not None and self._key_to_id.get(key_hash) == operation_id:
            del self._key_to_id[key_hash]

    def _purge_locked(self, now: float) -> int:
        expired: List[str] = []
        if self._retention_seconds is not None:
            cutoff = now - self._retention_seconds
            expired = [
                operation_id
                for operation_id, progress in self._operations.items()
                if progress.is_terminal and (progress.end_time or progress.start_time) <= cutoff
            ]
        for operation_id in expired:
            self._operations.pop(operation_id, None)

        removed = len(expired)
        if self._max_records is not None and len(self._operations) > self._max_records:
            finished = sorted(
                (progress for progress in self._operations.values() if progress.is_terminal),
                key=lambda item: item.end_time or item.start_time,
            )
            overflow = len(self._operations) - self._max_records
            for progress in finished[:overflow]:
                self._operations.pop(progress.operation_id, None)
                removed += 1
        if removed:
            _OPERATION_LOGGER.debug("Evicted %d finished operation record(s)", removed)
        return removed

    def _notify(self, update: OperationProgressUpdate) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(update)
            except Exception:
                _OPERATION_LOGGER.exception("Progress listener failed for operation %s", update.operation_id)

    def _estimate_remaining(
        self,
        start_time: float,
        current_step: int,
        total_steps: int,
        previous: Optional[float],
    ) -> Optional[float]:
        if current_step <= 0 or total_steps <= 0:
            return previous
        elapsed = max(0.0, self._clock() - start_time)
        return elapsed / current_step * (total_steps - current_step)
