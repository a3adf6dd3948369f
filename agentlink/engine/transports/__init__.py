"""Transports connecting a session to a local or remote agent backend."""

from .base import Transport, TransportContext, TransportHandle
from .local import LocalHandle, LocalTransport
from .remote import AttachResult, HubClient, RemoteHandle, RemoteTransport

__all__ = [
    "AttachResult",
    "HubClient",
    "LocalHandle",
    "LocalTransport",
    "RemoteHandle",
    "RemoteTransport",
    "Transport",
    "TransportContext",
    "TransportHandle",
]
