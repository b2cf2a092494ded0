from mediaops.webui.routes.operations import operations_bp
from mediaops.webui.routes.media import media_bp

__all__ = [
    "operations_bp",
    "media_bp",
]
