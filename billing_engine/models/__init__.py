from billing_engine.models.tenant import (  # noqa: F401
    BillingPeriod,
    SubscriptionPlan,
    Tenant,
    TenantStatus,
)
from billing_engine.models.billing import (  # noqa: F401
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    UsageRecord,
    WebhookEvent,
    WebhookEventStatus,
)
from billing_engine.models.notification import (  # noqa: F401
    Notification,
    NotificationChannel,
    NotificationStatus,
)
