"""Outbound report delivery."""

from query_engine.delivery.email import (
    DeliveryError,
    EmailDelivery,
    EmailMessage,
    HttpEmailDelivery,
    build_report_email,
)

__all__ = [
    "DeliveryError",
    "EmailDelivery",
    "EmailMessage",
    "HttpEmailDelivery",
    "build_report_email",
]
