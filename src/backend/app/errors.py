from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base error; ``context`` holds the ids of the failing operation."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"


class StoreError(ServiceError):
    """Raised when the data store rejects or cannot serve a request."""

    def __init__(self, message: str, status_code: Optional[int] = None, **context: Any):
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code


class ConversationHistoryError(ServiceError):
    pass


class BillingError(ServiceError):
    pass


class PlanNotFoundError(BillingError):
    pass


class WebhookSignatureError(ServiceError):
    """Raised when webhook signature verification fails"""
