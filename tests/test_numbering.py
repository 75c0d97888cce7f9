from billcycle.services import numbering


def test_format_number():
    assert numbering.format_number("INV-", 6, 42) == "INV-000042"
    assert numbering.format_number(None, 0, 7) == "7"
    assert numbering.format_number("X", None, 12) == "X12"


def test_sequences_are_independent(db_session):
    assert numbering.next_sequence_value(db_session, "alpha") == 1
    assert numbering.next_sequence_value(db_session, "alpha") == 2
    assert numbering.next_sequence_value(db_session, "beta", start_value=100) == 100
    assert numbering.next_sequence_value(db_session, "alpha") == 3


def test_invoice_numbers_are_sequential(db_session):
    first = numbering.next_invoice_number(db_session)
    second = numbering.next_invoice_number(db_session)
    assert first.startswith("INV-")
    assert int(second.removeprefix("INV-")) == int(first.removeprefix("INV-")) + 1
