from __future__ import annotations


class LineCheckError(Exception):
    """Base class for every error raised by the line checks package."""


class ProbeError(LineCheckError):
    pass


class ProbeTimeout(ProbeError):
    pass


class ProbeHttpError(ProbeError):
    def __init__(self, status_code: int, message: str | None = None) -> None:
        self.status_code = int(status_code)
        super().__init__(message or f"HTTP {self.status_code}")


class ProbeShapeMismatch(ProbeError):
    pass


class NoAddressError(LineCheckError):
    def __init__(self, contact_id: str | None = None) -> None:
        self.contact_id = contact_id
        super().__init__("Contact has no phone number or email address to check")


class NoActiveLineError(LineCheckError):
    def __init__(self, workspace_id: str | None = None) -> None:
        self.workspace_id = workspace_id
        super().__init__("No active line available for availability checks")


class PersistenceError(LineCheckError):
    pass


class NotificationDeliveryError(LineCheckError):
    pass


class ConfigurationError(LineCheckError):
    pass
