from __future__ import annotations


class HubFault(Exception):
    """Base class for faults raised by the threading and routing core."""

    status_code = 500

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code


class ValidationFault(HubFault):
    status_code = 400


class NotFoundFault(HubFault):
    """Unknown id, or an id owned by another tenant. The two are indistinguishable."""

    status_code = 404


class UnsupportedFault(HubFault):
    status_code = 400


class ProviderFault(HubFault):
    def __init__(
        self,
        code: str,
        message: str | None = None,
        *,
        provider: str,
        status: int | None = None,
    ) -> None:
        super().__init__(code, message)
        self.provider = provider
        self.status = status


class StorageFault(HubFault):
    """Storage is unavailable. Callers may retry."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__("storage_unavailable", message)
