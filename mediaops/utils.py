import json
import logging
import os
import platform
import subprocess
import sys
from functools import lru_cache
from typing import Sequence, Union

from dotenv import load_dotenv, find_dotenv


def _load_environment() -> None:
    explicit_path = os.environ.get("MEDIAOPS_ENV_FILE")
    if explicit_path:
        load_dotenv(explicit_path, override=False)
        return
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path, override=False)


_load_environment()

logger = logging.getLogger(__name__)


def ensure_directory(path):
    resolved = os.path.abspath(os.path.expanduser(str(path)))
    os.makedirs(resolved, exist_ok=True)
    return resolved


@lru_cache(maxsize=1)
def get_user_settings_dir():
    override = os.environ.get("MEDIAOPS_SETTINGS_DIR")
    if override:
        return ensure_directory(override)

    data_root = os.environ.get("MEDIAOPS_DATA_DIR")
    if data_root:
        try:
            return ensure_directory(os.path.join(data_root, "settings"))
        except OSError:
            pass

    from platformdirs import user_config_dir

    config_dir = user_config_dir("mediaops", appauthor=False, roaming=True, ensure_exists=True)
    return ensure_directory(config_dir)


def get_user_config_path():
    return os.path.join(get_user_settings_dir(), "config.json")


def get_internal_cache_root():
    root = os.environ.get("MEDIAOPS_CACHE_ROOT") or os.environ.get("XDG_CACHE_HOME")
    if root:
        return ensure_directory(root)
    from platformdirs import user_cache_dir

    return ensure_directory(user_cache_dir("mediaops", appauthor=False))


def get_internal_cache_path(folder=None):
    base = get_internal_cache_root()
    if folder:
        return ensure_directory(os.path.join(base, folder))
    return base


default_encoding = sys.getfilesystemencoding()


def create_process(
    cmd: Union[str, Sequence[str]],
    stdin=None,
    text: bool = True,
    capture_output: bool = False,
) -> "subprocess.Popen":
    """Start ``cmd`` with the platform flags the media tools need.

    With ``capture_output`` stdout and stderr are piped separately so the
    caller can ``communicate()``; otherwise stderr is folded into stdout.
    """

    use_shell = isinstance(cmd, str)
    if use_shell:
        logger.warning(
            "Security Warning: create_process called with string command. "
            "Prefer using a list of arguments to avoid shell injection risks."
        )

    kwargs = {
        "shell": use_shell,
        "stdout": subprocess.PIPE,
        "stderr": subprocess.PIPE if capture_output else subprocess.STDOUT,
    }

    if text:
        kwargs["text"] = True
        kwargs["encoding"] = default_encoding
        kwargs["errors"] = "replace"
    else:
        kwargs["text"] = False
        kwargs["bufsize"] = 0

    if stdin is not None:
        kwargs["stdin"] = stdin

    if platform.system() == "Windows":
        startupinfo = subprocess.STARTUPINFO()  # type: ignore[attr-defined]
        startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW  # type: ignore[attr-defined]
        startupinfo.wShowWindow = subprocess.SW_HIDE  # type: ignore[attr-defined]
        kwargs.update(
            {
                "startupinfo": startupinfo,
                "creationflags": subprocess.CREATE_NO_WINDOW,  # type: ignore[attr-defined]
            }
        )

    logger.debug("Executing: %s", cmd if isinstance(cmd, str) else " ".join(cmd))

    return subprocess.Popen(cmd, **kwargs)


def load_config():
    try:
        with open(get_user_config_path(), "r", encoding="utf-8") as f:
            return json.load(f)
    except Exception:
        return {}


def save_config(config):
    try:
        with open(get_user_config_path(), "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
    except Exception:
        logger.warning("Unable to write config file %s", get_user_config_path(), exc_info=True)
