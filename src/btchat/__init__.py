"""
btchat - single-peer Bluetooth chat link.

    from btchat import ChatService
    from btchat.rfcomm_transport import RFCOMMTransport

    service = ChatService(RFCOMMTransport(), {"name": "Kitchen"})
    service.on_data_received = lambda data: print(data.decode())
    service.start_listening()
"""

from .bluetooth_transport import (
    SERVICE_INSECURE,
    SERVICE_SECURE,
    Channel,
    ChatTransportInterface,
    ListeningEndpoint,
    ServiceIdentifier,
    TransportError,
)
from .ChatService import ChatService, ConnectionState
from .errors import BindFailure, ChatServiceError, ConnectFailure, IoFailure, NotConnected

__version__ = "0.1.0"

__all__ = [
    "ChatService",
    "ConnectionState",
    "ChatTransportInterface",
    "ListeningEndpoint",
    "Channel",
    "ServiceIdentifier",
    "SERVICE_SECURE",
    "SERVICE_INSECURE",
    "TransportError",
    "ChatServiceError",
    "BindFailure",
    "ConnectFailure",
    "IoFailure",
    "NotConnected",
]
