"""Domain exceptions raised by the orchestrator and its adapters."""

from __future__ import annotations

from product_shoot.orchestrator.models import ErrorCategory


class ProductShootError(RuntimeError):
    """Base error for the generation orchestrator."""


class InsufficientQuotaError(ProductShootError):
    """The user's balance cannot cover the requested slot count."""

    def __init__(
        self,
        message: str,
        *,
        requested: int | None = None,
        available: int | None = None,
    ) -> None:
        super().__init__(message)
        self.requested = requested
        self.available = available


class ReservationSystemUnavailableError(ProductShootError):
    """Quota backend could not be reached or answered with a server error."""


class PersistenceError(ProductShootError):
    """Durable store could not be read or written."""


class SlotTransitionError(ProductShootError):
    """Illegal slot state transition."""


class BackendCallError(ProductShootError):
    """Image backend call error with retryability and category hints."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        transient: bool = True,
        category: ErrorCategory | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient
        self.category = category
