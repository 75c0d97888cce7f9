"""Billing services package.

    from billcycle.services import billing as billing_service
    billing_service.invoices.confirm(db, invoice_id)
    billing_service.payments.record_manual_payment(db, invoice_id, amount, "cash")
"""

from billcycle.services.billing.invoices import Invoices
from billcycle.services.billing.payments import Payments
from billcycle.services.billing.runs import BillingRuns

# Singleton instances for service access
invoices = Invoices()
payments = Payments()
billing_runs = BillingRuns()
