from fastapi import Request

from fleetops.capabilities import Capabilities
from fleetops.config import Settings


def get_capabilities(request: Request) -> Capabilities:
    return request.app.state.capabilities


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
