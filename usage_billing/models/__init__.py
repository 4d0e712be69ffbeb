from usage_billing.models.account import Account, Feedback, Project  # noqa: F401
from usage_billing.models.billing import (  # noqa: F401
    Payment,
    PaymentStatus,
    PlanId,
    ProcessedEvent,
    ProcessedEventStatus,
    SubscriptionState,
    SubscriptionStatus,
    UsageCounter,
)
