from billcycle.tasks.billing import (  # noqa: F401
    dispatch_billing_cycles,
    generate_invoices_due,
    run_subscription_cycle,
)
