from .gateway import StorageGateway
from .settings import ConfigUpdateHandler, StorageSettings

__all__ = [
    "ConfigUpdateHandler",
    "StorageGateway",
    "StorageSettings",
]
