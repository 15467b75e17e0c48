"""Exceptions raised by the stores and service helpers.

Route handlers map these onto HTTP responses; see ``http_status``.
"""


class StoreError(Exception):
    status_code = 500


class ValidationError(StoreError):
    status_code = 400


class ConflictError(StoreError):
    """A write was based on a stale version of the record."""
    status_code = 409


class InvalidTransitionError(StoreError):
    status_code = 409

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move order from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class CancellationWindowError(StoreError):
    status_code = 409


class NotificationError(Exception):
    pass


class PaymentGatewayError(Exception):
    pass


def http_status(exc: Exception) -> int:
    return getattr(exc, 'status_code', 500)
