"""Domain records for payments and settlement plans."""

from .models import IncomingPayment, PayoutPlan

__all__ = [
    "IncomingPayment",
    "PayoutPlan",
]
