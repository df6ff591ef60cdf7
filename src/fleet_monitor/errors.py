"""
Error taxonomy for the fleet monitor.

- ConnectivityError: the device could not be reached (fatal for the cycle)
- ProtocolError: a command failed or returned a malformed reply (per feature)
- ProbeError: a single ping target failed (per target)
- PersistenceError: a store write failed (per write)
"""

from __future__ import annotations

from typing import Optional

from ._types import ConnectivityKind


class FleetMonitorError(Exception):
    """Base class for fleet monitor errors."""
    pass


class ConnectivityError(FleetMonitorError):
    """Raised when a device session cannot be opened or is lost."""

    def __init__(self, message: str, kind: ConnectivityKind, address: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.address = address

    def __str__(self) -> str:
        base = super().__str__()
        if self.address:
            return f"{self.kind.value}: {base} ({self.address})"
        return f"{self.kind.value}: {base}"


class ProtocolError(FleetMonitorError):
    """Raised when a command is rejected or its reply cannot be used."""

    def __init__(self, message: str, command: Optional[str] = None):
        super().__init__(message)
        self.command = command


class ProbeError(FleetMonitorError):
    """Raised when a single latency probe fails."""

    def __init__(self, message: str, host: str):
        super().__init__(message)
        self.host = host


class PersistenceError(FleetMonitorError):
    """Raised when the store cannot complete a write."""
    pass


class CredentialError(FleetMonitorError):
    """Raised when a stored secret cannot be decrypted."""
    pass
