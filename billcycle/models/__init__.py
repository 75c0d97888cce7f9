from billcycle.models.billing import (  # noqa: F401
    BillingRun,
    BillingRunStatus,
    DocumentSequence,
    Invoice,
    InvoiceLine,
    InvoiceStatus,
    Payment,
    PaymentMethodType,
    PaymentStatus,
)
from billcycle.models.catalog import (  # noqa: F401
    BillingPeriod,
    Discount,
    DiscountType,
    Plan,
    PlanLine,
    Product,
    TaxRate,
)
from billcycle.models.subscription import (  # noqa: F401
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
)
