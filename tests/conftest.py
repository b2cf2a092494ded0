import os
import tempfile
from pathlib import Path
from typing import List

import pytest

# Keep config.json and caches out of the real user directories.
os.environ.setdefault("MEDIAOPS_SETTINGS_DIR", tempfile.mkdtemp(prefix="mediaops-settings-"))
os.environ.setdefault("MEDIAOPS_CACHE_ROOT", tempfile.mkdtemp(prefix="mediaops-cache-"))

from mediaops.operations import OperationRegistry  # noqa: E402
from mediaops.splitting import SplitJobLauncher  # noqa: E402
from tests.fakes import FakeProbe, RecordingExecutor  # noqa: E402


@pytest.fixture
def media_file(tmp_path: Path) -> Path:
    path = tmp_path / "book.mp3"
    path.write_bytes(b"ID3")
    return path


@pytest.fixture
def registry() -> OperationRegistry:
    return OperationRegistry()


@pytest.fixture
def make_launcher(registry):
    launchers: List[SplitJobLauncher] = []

    def _make(probe=None, executor=None, max_workers: int = 4) -> SplitJobLauncher:
        launcher = SplitJobLauncher(
            registry,
            probe or FakeProbe(),
            executor or RecordingExecutor(),
            max_workers=max_workers,
        )
        launchers.append(launcher)
        return launcher

    yield _make
    for launcher in launchers:
        launcher.shutdown(wait=True)
