import os
import threading
from typing import List, Optional, Set

from mediaops.media import ChapterInfo, MediaInfo, StepResult
from mediaops.splitting import SplitStep


class FakeProbe:
    def __init__(self, duration: float = 600.0, chapters: Optional[List[ChapterInfo]] = None) -> None:
        self.duration = duration
        self.chapters = chapters or []
        self.calls: List[str] = []

    def __call__(self, file_path: str) -> Optional[MediaInfo]:
        self.calls.append(file_path)
        if not os.path.exists(file_path):
            return None
        return MediaInfo(
            file_path=file_path,
            file_name=os.path.basename(file_path),
            duration=self.duration,
            format_name="mp3",
            chapters=list(self.chapters),
        )


class RecordingExecutor:
    """Step executor that records calls and can be held open with a gate."""

    def __init__(self, failing: Optional[Set[int]] = None, gate: Optional[threading.Event] = None) -> None:
        self.failing = set(failing or ())
        self.gate = gate
        self.steps: List[SplitStep] = []
        self.sources: List[str] = []
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.steps)

    def __call__(self, source: str, step: SplitStep, cancel_event: Optional[threading.Event] = None) -> StepResult:
        with self._lock:
            self.steps.append(step)
            self.sources.append(source)
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if step.index in self.failing:
            return StepResult(success=False, output_path=step.output_path, error="boom")
        return StepResult(success=True, output_path=step.output_path)


def three_chapters() -> List[ChapterInfo]:
    return [
        ChapterInfo(index=1, start_seconds=0.0, end_seconds=120.0, title="Opening"),
        ChapterInfo(index=2, start_seconds=120.0, end_seconds=300.5, title="Middle: Part/Two"),
        ChapterInfo(index=3, start_seconds=300.5, end_seconds=420.0, title="Finale"),
    ]


