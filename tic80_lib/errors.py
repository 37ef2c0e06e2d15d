"""Custom exceptions for the TIC-80 remoting library."""


class Tic80Error(Exception):
    """Base exception for all TIC-80 remoting library errors."""

    pass


class TransportError(Tic80Error):
    """Raised when the underlying stream fails to connect, read or write."""

    pass


class ConnectTimeout(TransportError):
    """Raised when a connect attempt exceeds its deadline."""

    pass


class ProtocolMismatch(Tic80Error):
    """Raised when the hello banner does not match the expected protocol."""

    pass


class RequestTimeout(Tic80Error):
    """Raised when a single request gets no response within its timeout."""

    pass


class NotConnectedError(Tic80Error):
    """Raised when an operation needs a live connection and there is none."""

    pass


class RemoteError(Tic80Error):
    """Raised when the remote process answers a command with ERR."""

    pass
