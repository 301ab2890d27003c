# Shared billing package
from .errors import APIError
from .models import LedgerEntry, Subscription
from .response_utils import error_response, success_response

__all__ = [
    "LedgerEntry",
    "Subscription",
    "error_response",
    "success_response",
    "APIError",
]
