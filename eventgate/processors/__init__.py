"""
Job processors registered with the worker.
"""
from eventgate.processors.webhooks import (
    DownstreamHandler,
    ErrorProcessor,
    MessageProcessor,
    PaymentProcessor,
    StatusProcessor,
    WebhookProcessor,
)
from eventgate.processors.maintenance import MAINTENANCE_HOOK, MaintenanceProcessor

__all__ = [
    "DownstreamHandler",
    "ErrorProcessor",
    "MessageProcessor",
    "PaymentProcessor",
    "StatusProcessor",
    "WebhookProcessor",
    "MAINTENANCE_HOOK",
    "MaintenanceProcessor",
]
