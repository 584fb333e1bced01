"""Remote system clients: abstract interfaces plus httpx implementations."""

from src.app.sync.clients.base import RemoteApiError, SourceClient, TargetClient
from src.app.sync.clients.source import HttpSourceClient
from src.app.sync.clients.target import HttpTargetClient

__all__ = [
    "HttpSourceClient",
    "HttpTargetClient",
    "RemoteApiError",
    "SourceClient",
    "TargetClient",
]
