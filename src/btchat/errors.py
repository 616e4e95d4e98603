"""
Exceptions raised or reported by ChatService.

BindFailure, ConnectFailure and IoFailure are delivered to the collaborator
through on_connection_failed() / raised from send(). NotConnected is raised
synchronously from send() when there is no session.
"""


class ChatServiceError(Exception):
    """Base class for all chat link errors."""


class BindFailure(ChatServiceError):
    """The listening endpoint could not be bound or published."""

    def __init__(self, service, cause=None):
        self.service = service
        self.cause = cause
        message = f"could not listen on {service}"
        if cause is not None:
            message += f": {type(cause).__name__}: {cause}"
        super().__init__(message)


class ConnectFailure(ChatServiceError):
    """An outbound connection attempt failed."""

    def __init__(self, peer, cause=None):
        self.peer = peer
        self.cause = cause
        message = f"could not connect to {peer}"
        if cause is not None:
            message += f": {type(cause).__name__}: {cause}"
        super().__init__(message)


class IoFailure(ChatServiceError):
    """A read or write on the session channel failed."""

    def __init__(self, peer, operation, cause=None):
        self.peer = peer
        self.operation = operation
        self.cause = cause
        if cause is None:
            message = f"{operation} on {peer}: end of stream"
        else:
            message = f"{operation} on {peer} failed: {type(cause).__name__}: {cause}"
        super().__init__(message)


class NotConnected(ChatServiceError):
    """An operation needed a session but none is established."""
