from __future__ import annotations

import threading

import pytest

from mediaops.operation_key import OperationKey
from mediaops.operations import (
    DUPLICATE_MESSAGE,
    NEW_OPERATION_MESSAGE,
    NullProgressReporter,
    OperationProgressUpdate,
    OperationRegistry,
    OperationResult,
    OperationStatus,
)


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _key(tmp_path, seconds=100, name="a.mp3"):
    return OperationKey(str(tmp_path / name), "split-by-duration", {"maxDurationSeconds": seconds})


def test_start_operation_creates_pending_record():
    registry = OperationRegistry()

    operation_id = registry.start_operation("split-by-duration", 4, "Splitting")

    progress = registry.get(operation_id)
    assert progress is not None
    assert progress.status is OperationStatus.PENDING
    assert progress.total_steps == 4
    assert progress.current_step == 0
    assert progress.current_operation == "Splitting"
    assert progress.percent_complete == 0.0


def test_duplicate_request_reuses_active_operation(tmp_path):
    registry = OperationRegistry()

    first = registry.start_with_deduplication(_key(tmp_path), 6)
    second = registry.start_with_deduplication(_key(tmp_path), 6)

    assert first.is_new_operation is True
    assert first.message == NEW_OPERATION_MESSAGE
    assert second.is_new_operation is False
    assert second.message == DUPLICATE_MESSAGE
    assert second.operation_id == first.operation_id
    assert len(registry) == 1


def test_different_options_start_separate_operations(tmp_path):
    registry = OperationRegistry()

    first = registry.start_with_deduplication(_key(tmp_path, seconds=100), 6)
    second = registry.start_with_deduplication(_key(tmp_path, seconds=200), 3)

    assert second.is_new_operation is True
    assert second.operation_id != first.operation_id


@pytest.mark.parametrize("finish", ["complete", "fail", "cancel", "error"])
def test_terminal_state_frees_the_key(tmp_path, finish):
    registry = OperationRegistry()
    first = registry.start_with_deduplication(_key(tmp_path), 2)

    if finish == "complete":
        registry.report_completion(first.operation_id, OperationResult(success=True, message="done"))
    elif finish == "fail":
        registry.report_completion(first.operation_id, OperationResult(success=False, message="nothing"))
    elif finish == "cancel":
        registry.report_cancelled(first.operation_id)
    else:
        registry.report_error(first.operation_id, "boom")

    again = registry.start_with_deduplication(_key(tmp_path), 2)
    assert again.is_new_operation is True
    assert again.operation_id != first.operation_id
    assert registry.get(first.operation_id).is_terminal


def test_concurrent_duplicate_requests_yield_one_operation(tmp_path):
    registry = OperationRegistry()
    barrier = threading.Barrier(20)
    results = []
    results_lock = threading.Lock()

    def _start():
        barrier.wait()
        result = registry.start_with_deduplication(_key(tmp_path), 6)
        with results_lock:
            results.append(result)

    threads = [threading.Thread(target=_start) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert len(results) == 20
    assert sum(1 for result in results if result.is_new_operation) == 1
    assert len({result.operation_id for result in results}) == 1


def test_progress_moves_to_running_and_merges_metadata():
    registry = OperationRegistry()
    operation_id = registry.start_operation("split-by-chapters", 3)

    registry.report_progress(OperationProgressUpdate(operation_id, 1, 3, "Chapter 1", {"a": 1}))
    registry.report_progress(OperationProgressUpdate(operation_id, 2, 3, "Chapter 2", {"b": 2}))

    progress = registry.get(operation_id)
    assert progress.status is OperationStatus.RUNNING
    assert progress.current_step == 2
    assert progress.current_operation == "Chapter 2"
    assert dict(progress.metadata) == {"a": 1, "b": 2}
    assert progress.percent_complete == pytest.approx(66.666, rel=1e-3)


def test_progress_never_moves_backwards():
    registry = OperationRegistry()
    operation_id = registry.start_operation("split-by-duration", 5)

    registry.report_progress(OperationProgressUpdate(operation_id, 3, 5))
    registry.report_progress(OperationProgressUpdate(operation_id, 1, 5))
    registry.report_progress(OperationProgressUpdate(operation_id, 9, 2))

    progress = registry.get(operation_id)
    assert progress.current_step == 3
    assert progress.total_steps == 3


def test_estimated_time_remaining_uses_elapsed_rate():
    clock = FakeClock()
    registry = OperationRegistry(clock=clock)
    operation_id = registry.start_operation("split-by-duration", 4)

    registry.report_progress(OperationProgressUpdate(operation_id, 0, 4))
    assert registry.get(operation_id).estimated_time_remaining is None

    clock.advance(10)
    registry.report_progress(OperationProgressUpdate(operation_id, 1, 4))
    assert registry.get(operation_id).estimated_time_remaining == pytest.approx(30.0)

    clock.advance(10)
    registry.report_progress(OperationProgressUpdate(operation_id, 2, 4))
    assert registry.get(operation_id).estimated_time_remaining == pytest.approx(20.0)


def test_completion_records_outputs_and_end_time():
    clock = FakeClock()
    registry = OperationRegistry(clock=clock)
    operation_id = registry.start_operation("split-by-duration", 2)
    clock.advance(5)

    registry.report_completion(
        operation_id, OperationResult(success=True, message="File split into 2 parts", output_files=["a", "b"])
    )

    progress = registry.get(operation_id)
    assert progress.status is OperationStatus.COMPLETED
    assert progress.current_step == 2
    assert progress.output_files == ("a", "b")
    assert progress.end_time == clock.now
    assert progress.error_message is None
    assert progress.estimated_time_remaining == 0.0


def test_unsuccessful_completion_is_failed_with_message():
    registry = OperationRegistry()
    operation_id = registry.start_operation("split-by-duration", 2)

    registry.report_completion(operation_id, OperationResult(success=False, message="No parts were created"))

    progress = registry.get(operation_id)
    assert progress.status is OperationStatus.FAILED
    assert progress.error_message == "No parts were created"


def test_terminal_records_ignore_later_updates():
    registry = OperationRegistry()
    operation_id = registry.start_operation("split-by-duration", 3)
    registry.report_error(operation_id, "boom")

    registry.report_progress(OperationProgressUpdate(operation_id, 2, 3))
    registry.report_completion(operation_id, OperationResult(success=True))
    registry.report_cancelled(operation_id)

    progress = registry.get(operation_id)
    assert progress.status is OperationStatus.FAILED
    assert progress.error_message == "boom"
    assert progress.current_step == 0


def test_unknown_ids_are_ignored():
    registry = OperationRegistry()

    registry.report_progress(OperationProgressUpdate("missing", 1, 2))
    registry.report_error("missing", "boom")
    registry.report_completion("missing", OperationResult(success=True))

    assert registry.get("missing") is None
    assert len(registry) == 0


def test_finished_records_expire_after_retention():
    clock = FakeClock()
    registry = OperationRegistry(retention_seconds=60, clock=clock)
    finished = registry.start_operation("split-by-duration", 1)
    running = registry.start_operation("split-by-duration", 1)
    registry.report_error(finished, "boom")

    clock.advance(59)
    assert registry.purge_expired() == 0
    clock.advance(2)
    assert registry.purge_expired() == 1

    assert registry.get(finished) is None
    assert registry.get(running) is not None


def test_record_cap_evicts_oldest_finished_first():
    clock = FakeClock()
    registry = OperationRegistry(retention_seconds=None, max_records=2, clock=clock)
    oldest = registry.start_operation("split-by-duration", 1)
    registry.report_error(oldest, "boom")
    clock.advance(1)
    active = registry.start_operation("split-by-duration", 1)
    clock.advance(1)
    newest = registry.start_operation("split-by-duration", 1)

    assert registry.purge_expired() == 1
    assert registry.get(oldest) is None
    assert registry.get(active) is not None
    assert registry.get(newest) is not None


def test_record_cap_never_evicts_active_operations():
    registry = OperationRegistry(retention_seconds=None, max_records=1)
    first = registry.start_operation("split-by-duration", 1)
    second = registry.start_operation("split-by-duration", 1)

    assert registry.get(first) is not None
    assert registry.get(second) is not None


def test_list_operations_is_newest_first():
    clock = FakeClock()
    registry = OperationRegistry(clock=clock)
    first = registry.start_operation("split-by-duration", 1)
    clock.advance(1)
    second = registry.start_operation("split-by-duration", 1)

    assert [item.operation_id for item in registry.list_operations()] == [second, first]


def test_listeners_receive_updates_and_failures_are_contained():
    registry = OperationRegistry()
    received = []

    def _broken(update):
        raise RuntimeError("listener bug")

    registry.subscribe(_broken)
    registry.subscribe(received.append)
    operation_id = registry.start_operation("split-by-duration", 2)

    registry.report_progress(OperationProgressUpdate(operation_id, 1, 2, "half"))
    registry.unsubscribe(received.append)
    registry.report_progress(OperationProgressUpdate(operation_id, 2, 2, "done"))

    assert [update.current_operation for update in received] == ["half"]
    assert registry.get(operation_id).current_step == 2


def test_as_dict_uses_camel_case_keys():
    registry = OperationRegistry()
    operation_id = registry.start_operation("split-by-chapters", 4, "Splitting")

    payload = registry.get(operation_id).as_dict()

    assert payload["operationId"] == operation_id
    assert payload["operationType"] == "split-by-chapters"
    assert payload["status"] == "pending"
    assert payload["totalSteps"] == 4
    assert payload["percentComplete"] == 0.0
    assert payload["endTime"] is None
    assert payload["startTime"].endswith("+00:00")


def test_null_reporter_accepts_everything():
    reporter = NullProgressReporter()

    reporter.report_progress(OperationProgressUpdate("x", 1, 2))
    reporter.report_error("x", "boom")
    reporter.report_completion("x", OperationResult(success=True))
    reporter.report_cancelled("x")

    assert reporter.get_progress("x") is None


def test_cancelled_record_keeps_outputs_written_so_far():
    registry = OperationRegistry()
    operation_id = registry.start_operation("split-by-duration", 3)

    registry.report_cancelled(operation_id, "Operation cancelled after 2 of 3 steps", ["p1.mp3", "p2.mp3"])

    progress = registry.get(operation_id)
    assert progress.status is OperationStatus.CANCELLED
    assert progress.output_files == ("p1.mp3", "p2.mp3")
    assert progress.as_dict()["outputFiles"] == ["p1.mp3", "p2.mp3"]


def test_snapshot_metadata_is_read_only():
    registry = OperationRegistry()
    operation_id = registry.start_operation("split-by-duration", 2)
    registry.report_progress(OperationProgressUpdate(operation_id, 1, 2, "half", {"filesCreated": 1}))
    snapshot = registry.get(operation_id)

    with pytest.raises(TypeError):
        snapshot.metadata["filesCreated"] = 99

    assert registry.get(operation_id).metadata["filesCreated"] == 1
    assert registry.get(operation_id).as_dict()["metadata"] == {"filesCreated": 1}
    with pytest.raises(TypeError):
        registry.get(registry.start_operation("split-by-chapters", 1)).metadata["x"] = 1
