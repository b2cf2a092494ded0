"""Long-running media operations over ffmpeg with deduplicated progress tracking."""

__version__ = "0.1.0"
