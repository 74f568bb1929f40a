from .client import CloudStackClient, RemoteResourceClient

__all__ = ["CloudStackClient", "RemoteResourceClient"]
