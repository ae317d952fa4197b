"""Exception types for hwtest-visa.

All exceptions raised by the instrument communication stack inherit from
:class:`VisaError`, so callers can catch every stack-specific failure with a
single except clause.

Exception hierarchy:
    VisaError (base)
    +-- ResourceParseError: Malformed resource string
    +-- ConnectError: Opening a resource failed
    |   +-- DeviceNotFoundError: No such port, device or host
    |   +-- DeviceBusyError: Resource held by another owner
    |   +-- ConnectRefusedError: Remote end refused the connection
    |   +-- ConnectTimeoutError: Connection attempt timed out
    |   +-- AlreadyOpenError: Transport is not in the Closed state
    +-- NotOpenError: I/O attempted on a transport that is not Open
    +-- VisaTimeoutError: I/O did not complete within the timeout
    +-- TransportIOError: Underlying link fault (transport enters Error)
    +-- ProtocolError: Malformed USB-TMC header, binary block or reply
    +-- ValidationError: Value rejected before anything was sent
    +-- SessionError: Session-level failure

Every error carries :attr:`VisaError.requires_reopen`. When it is True the
transport has entered the Error state and must be closed and reopened before
further use; otherwise the failed operation may simply be retried.
"""

from __future__ import annotations


class VisaError(Exception):
    """Base exception for all hwtest-visa errors.

    Attributes:
        requires_reopen: True when the transport that raised the error is now
            in the Error state and must be closed and reopened.
    """

    requires_reopen: bool = False

    def __init__(self, message: str = "", *, requires_reopen: bool | None = None) -> None:
        super().__init__(message)
        if requires_reopen is not None:
            self.requires_reopen = requires_reopen


class ResourceParseError(VisaError, ValueError):
    """Raised when a resource string cannot be parsed."""


class ConnectError(VisaError):
    """Raised when a transport cannot be opened."""


class DeviceNotFoundError(ConnectError):
    """Raised when the port, USB device or host does not exist."""


class DeviceBusyError(ConnectError):
    """Raised when the resource is already held by another owner."""


class ConnectRefusedError(ConnectError):
    """Raised when the remote end actively refuses the connection."""


class AlreadyOpenError(ConnectError):
    """Raised by ``open()`` when the transport is not in the Closed state."""


class NotOpenError(VisaError):
    """Raised when I/O is attempted on a transport that is not Open."""


class VisaTimeoutError(VisaError, TimeoutError):
    """Raised when an I/O operation does not complete within its timeout."""


class ConnectTimeoutError(ConnectError, VisaTimeoutError):
    """Raised when a connection attempt does not complete within its timeout."""


class TransportIOError(VisaError):
    """Raised on an underlying link fault.

    The transport has moved to the Error state and must be reopened.
    """

    requires_reopen = True


class ProtocolError(VisaError):
    """Raised for malformed USB-TMC headers, binary blocks or replies."""


class ValidationError(VisaError, ValueError):
    """Raised when a value is rejected before being sent to the instrument."""


class SessionError(VisaError):
    """Raised for session-level failures such as using a closed session."""
