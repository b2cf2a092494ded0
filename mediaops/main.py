"""Console entry point that launches the HTTP API."""

from __future__ import annotations

import signal
import sys

from mediaops.webui.app import main as _run_web_api


def _handle_sigterm(signum, _frame):
    sys.exit(0)


signal.signal(signal.SIGTERM, _handle_sigterm)


def main() -> None:
    _run_web_api()


if __name__ == "__main__":  # pragma: no cover - manual execution hook
    main()
