"""Typed billing failures.

Each failure carries a stable ``code`` and the HTTP status the API maps it
to. Raising one of these never leaves partial state behind: services roll
back before re-raising.
"""


class BillingError(Exception):
    code = "billing_error"
    status_code = 400

    def __init__(self, message: str | None = None, details: dict | None = None):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)


class InvalidRule(BillingError):
    """Discount or tax rule is not valid for this line."""

    code = "invalid_rule"
    status_code = 422


class EmptyInvoice(BillingError):
    """Invoice has no lines."""

    code = "empty_invoice"
    status_code = 422


class Overpayment(BillingError):
    """Payment would push the paid amount above the invoice total."""

    code = "overpayment"
    status_code = 409


class InvoiceHasPayments(BillingError):
    """Invoice has completed payments and cannot be cancelled."""

    code = "invoice_has_payments"
    status_code = 409


class DuplicatePeriod(BillingError):
    """An invoice already exists for this subscription period."""

    code = "duplicate_period"
    status_code = 409


class SubscriptionNotActive(BillingError):
    """Subscription is not active."""

    code = "subscription_not_active"
    status_code = 409


class InvalidTransition(BillingError):
    """Status transition is not allowed."""

    code = "invalid_transition"
    status_code = 409


class InvoiceLocked(BillingError):
    """Invoice lines are frozen once the invoice leaves draft."""

    code = "invoice_locked"
    status_code = 409


class InvoiceIntegrityError(BillingError):
    """Stored invoice totals do not match its lines."""

    code = "invoice_integrity_error"
    status_code = 500


class PaymentStateError(BillingError):
    """Payment cannot move to the requested status."""

    code = "payment_state_error"
    status_code = 409


class CurrencyMismatch(BillingError):
    """Amounts in different currencies cannot be combined."""

    code = "currency_mismatch"
    status_code = 400


class InvalidAmount(BillingError):
    """Amount must be greater than zero."""

    code = "invalid_amount"
    status_code = 422
