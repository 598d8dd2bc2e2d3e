"""Error taxonomy shared by the dispatch console components."""
from __future__ import annotations

from typing import Dict, Optional


class DispatchError(Exception):
    """Base class for every failure the console surfaces to an operator."""


class TransientNetworkError(DispatchError):
    """A backend/collaborator call failed or returned a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StateConflictError(DispatchError):
    """The backend refused a lifecycle transition (e.g. already handled elsewhere)."""

    def __init__(self, request_id: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.request_id = request_id
        self.status_code = status_code


class InvalidRequestError(DispatchError):
    """Field validation failed; raised before any network call is made."""

    def __init__(self, errors: Dict[str, str]) -> None:
        fields = ", ".join(sorted(errors))
        super().__init__(f"invalid fields: {fields}")
        self.errors = dict(errors)


class DeviceError(DispatchError):
    """A local device (location provider, microphone) is unavailable."""


class PositionError(DeviceError):
    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"

    def __init__(self, kind: str, message: str = "") -> None:
        super().__init__(message or kind)
        self.kind = kind


class AudioDeviceError(DeviceError):
    pass


__all__ = [
    "AudioDeviceError",
    "DeviceError",
    "DispatchError",
    "InvalidRequestError",
    "PositionError",
    "StateConflictError",
    "TransientNetworkError",
]
