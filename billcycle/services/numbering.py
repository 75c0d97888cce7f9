"""Sequential document numbers backed by row-locked counters."""

from sqlalchemy.orm import Session

from billcycle.config import settings
from billcycle.models.billing import DocumentSequence

INVOICE_SEQUENCE = "invoice_number"
SUBSCRIPTION_SEQUENCE = "subscription_number"


def format_number(prefix: str | None, padding: int | None, value: int) -> str:
    width = max(int(padding or 0), 0)
    return f"{prefix or ''}{str(value).zfill(width)}"


def next_sequence_value(db: Session, key: str, start_value: int = 1) -> int:
    """Take the next value of ``key``, creating the counter on first use.

    The counter row stays locked until the caller's transaction ends, so two
    transactions can never draw the same number.
    """
    counter = (
        db.query(DocumentSequence)
        .with_for_update()
        .filter(DocumentSequence.key == key)
        .one_or_none()
    )
    if counter is None:
        counter = DocumentSequence(key=key, next_value=start_value)
        db.add(counter)
    drawn = counter.next_value
    counter.next_value = drawn + 1
    db.flush()
    return drawn


def _next_document_number(db: Session, key: str, prefix: str) -> str:
    return format_number(prefix, settings.document_number_padding, next_sequence_value(db, key))


def next_invoice_number(db: Session) -> str:
    return _next_document_number(db, INVOICE_SEQUENCE, settings.invoice_number_prefix)


def next_subscription_number(db: Session) -> str:
    return _next_document_number(
        db, SUBSCRIPTION_SEQUENCE, settings.subscription_number_prefix
    )
