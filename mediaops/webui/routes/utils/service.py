from flask import current_app

from mediaops.config import Settings
from mediaops.operations import OperationRegistry
from mediaops.splitting import MediaProbe, SplitJobLauncher


def get_launcher() -> SplitJobLauncher:
    return current_app.extensions["split_launcher"]


def get_registry() -> OperationRegistry:
    return current_app.extensions["operation_registry"]


def get_media_probe() -> MediaProbe:
    return current_app.extensions["media_probe"]


def get_settings() -> Settings:
    return current_app.extensions["mediaops_settings"]
