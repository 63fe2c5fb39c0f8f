from typing import Iterable


class BillingError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(BillingError):
    """Input rejected before anything was written."""

    status_code = 400

    def __init__(self, errors: Iterable[str]):
        self.errors = list(errors)
        super().__init__(f"Validation failed: {', '.join(self.errors)}")


class NotFound(BillingError):
    status_code = 404

    def __init__(self, what: str, key=None):
        self.what = what
        self.key = key
        super().__init__(f"{what} not found")


class TransactionFailed(BillingError):
    """Persistence broke mid-transaction; nothing was kept."""

    status_code = 500
