"""Flask HTTP API for split operations; Flask is imported on first use."""

__all__ = ["build_launcher", "create_app"]


def __getattr__(name: str):
    if name in __all__:
        from . import app

        return getattr(app, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
