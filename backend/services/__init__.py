# services/__init__.py
# ============================================================================
# DEAL ROOM PAYMENTS - SERVICES MODULE
# ============================================================================
# Orchestration, currency conversion and notifications
# ============================================================================

from services.currency_service import (
    CurrencyService,
    CurrencyConfig,
)

from services.notification_service import (
    INotificationService,
    LoggingNotificationService,
    WebhookNotificationService,
    create_notification_service,
)

from services.payment_service import (
    PaymentService,
    PaymentSettings,
)

__all__ = [
    # Currency
    "CurrencyService",
    "CurrencyConfig",
    # Notifications
    "INotificationService",
    "LoggingNotificationService",
    "WebhookNotificationService",
    "create_notification_service",
    # Orchestration
    "PaymentService",
    "PaymentSettings",
]
