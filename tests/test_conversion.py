# tests/test_conversion.py
from decimal import Decimal

import pytest
from sqlalchemy.orm.exc import StaleDataError

from wavebooks.extensions import db
from wavebooks.models import Client, Invoice, InvoiceStatus, InvoiceType, Project, User
from wavebooks.services import conversion
from wavebooks.services.conversion import ClientOverride, PaymentOptions, Selection, convert, remaining
from wavebooks.services.errors import (
    ConsistencyError,
    EmptySelectionError,
    InvalidSelectionError,
    ValidationError,
)
from wavebooks.services.invoicing import ServiceInput, cancel_invoice, create_quote
from wavebooks.utils.clock import utcnow_naive


def _lines(quote):
    return {line.name: line for line in quote.service_lines}


def _billed_count(user_id):
    return Invoice.query.filter_by(user_id=user_id, type=InvoiceType.INVOICE).count()


def test_partial_then_full_conversion(user, make_quote):
    quote = make_quote()
    lines = _lines(quote)
    a, b = lines["A"], lines["B"]
    year = utcnow_naive().year

    first = convert(user.id, quote.id, [Selection(a.id, Decimal("4"))])

    assert first.invoice.amount == Decimal("4000")
    assert first.invoice.invoice_number == f"INV-{year}-001"
    assert first.invoice.status == InvoiceStatus.PENDING
    assert first.invoice.source_quote_id == quote.id
    assert first.status.for_service(a.id).remaining_quantity == Decimal("6")
    assert first.status.for_service(b.id).remaining_quantity == Decimal("5")
    assert first.status.is_fully_converted is False
    assert first.status.conversion_percentage == Decimal("20.00")
    assert quote.status == InvoiceStatus.PENDING

    second = convert(user.id, quote.id, [Selection(a.id, Decimal("6")), Selection(b.id, Decimal("5"))])

    assert second.invoice.amount == Decimal("16000")
    assert second.invoice.invoice_number == f"INV-{year}-002"
    assert second.status.is_fully_converted is True
    assert second.status.remaining_amount == Decimal("0")
    assert second.status.conversion_count == 2
    assert second.status.conversion_percentage == Decimal("100.00")
    assert quote.status == InvoiceStatus.CONVERTED


def test_line_items_freeze_the_service_snapshot(user, make_quote):
    quote = make_quote()
    a = _lines(quote)["A"]

    result = convert(user.id, quote.id, [Selection(a.id, Decimal("2.5"))])

    [item] = result.invoice.items
    assert item.source_service_line_id == a.id
    assert item.name == "A"
    assert item.unit_price == Decimal("1000")
    assert item.total == Decimal("2500")


def test_selection_over_remaining_writes_nothing(user, make_quote):
    quote = make_quote()
    a = _lines(quote)["A"]
    convert(user.id, quote.id, [Selection(a.id, Decimal("4"))])

    with pytest.raises(InvalidSelectionError) as exc:
        convert(user.id, quote.id, [Selection(a.id, Decimal("7"))])

    assert Decimal(exc.value.details["remaining_quantity"]) == Decimal("6")
    assert _billed_count(user.id) == 1
    assert remaining(user.id, quote.id).for_service(a.id).remaining_quantity == Decimal("6")


@pytest.mark.parametrize("quantities", [[], ["0"], ["0", "0"]])
def test_empty_selection(user, make_quote, quantities):
    quote = make_quote()
    ids = [line.id for line in quote.service_lines]
    selections = [Selection(ids[i], Decimal(q)) for i, q in enumerate(quantities)]

    with pytest.raises(EmptySelectionError):
        convert(user.id, quote.id, selections)
    assert _billed_count(user.id) == 0


def test_rejects_duplicate_and_negative_selections(user, make_quote):
    quote = make_quote()
    a, b = _lines(quote)["A"], _lines(quote)["B"]

    with pytest.raises(InvalidSelectionError):
        convert(user.id, quote.id, [Selection(a.id, Decimal("1")), Selection(a.id, Decimal("1"))])
    with pytest.raises(InvalidSelectionError):
        convert(user.id, quote.id, [Selection(a.id, Decimal("1")), Selection(b.id, Decimal("-1"))])
    assert _billed_count(user.id) == 0


def test_rejects_service_from_another_quote(user, make_quote):
    quote = make_quote()
    other = make_quote([{"name": "C", "unit_price": "500", "quantity": "3"}])
    foreign = other.service_lines[0]

    with pytest.raises(InvalidSelectionError) as exc:
        convert(user.id, quote.id, [Selection(foreign.id, Decimal("1"))])
    assert exc.value.details["service_line_id"] == foreign.id


def test_cannot_convert_a_billed_invoice(user, invoice):
    with pytest.raises(ValidationError) as exc:
        remaining(user.id, invoice.id)
    assert exc.value.code == "not-a-quote"


def test_cancelled_invoice_gives_quantities_back(user, make_quote):
    quote = make_quote()
    a, b = _lines(quote)["A"], _lines(quote)["B"]
    first = convert(user.id, quote.id, [Selection(a.id, Decimal("4"))])

    cancel_invoice(user.id, first.invoice.id)

    status = remaining(user.id, quote.id)
    assert status.for_service(a.id).remaining_quantity == Decimal("10")
    assert status.conversion_count == 0

    full = convert(user.id, quote.id, [Selection(a.id, Decimal("10")), Selection(b.id, Decimal("5"))])
    assert full.status.is_fully_converted is True


def test_converted_quote_stays_converted_after_cancellation(user, make_quote):
    quote = make_quote()
    a, b = _lines(quote)["A"], _lines(quote)["B"]
    result = convert(user.id, quote.id, [Selection(a.id, Decimal("10")), Selection(b.id, Decimal("5"))])
    assert quote.status == InvoiceStatus.CONVERTED

    cancel_invoice(user.id, result.invoice.id)

    assert quote.status == InvoiceStatus.CONVERTED
    status = remaining(user.id, quote.id)
    assert status.is_fully_converted is False
    assert status.remaining_amount == Decimal("20000")


def test_quote_without_services_is_never_fully_converted(user, project):
    quote = Invoice(
        user_id=user.id,
        invoice_number="PRO-2026-900",
        type=InvoiceType.PROFORMA,
        status=InvoiceStatus.DRAFT,
        amount=Decimal("0"),
        project_id=project.id,
    )
    db.session.add(quote)
    db.session.commit()

    status = remaining(user.id, quote.id)
    assert status.is_fully_converted is False
    assert status.conversion_percentage == Decimal("0.00")


def test_client_snapshot_prefers_override_then_project_client(user, make_quote):
    quote = make_quote()
    a = _lines(quote)["A"]

    result = convert(
        user.id,
        quote.id,
        [Selection(a.id, Decimal("1"))],
        client_override=ClientOverride(email="compta@acme.ci"),
    )

    assert result.invoice.client_name == "Acme SARL"
    assert result.invoice.client_email == "compta@acme.ci"
    assert result.invoice.client_address == "Plateau, Abidjan"


def test_mark_as_paid_on_conversion(user, make_quote):
    quote = make_quote()
    a = _lines(quote)["A"]
    paid_at = utcnow_naive().replace(microsecond=0)

    result = convert(
        user.id,
        quote.id,
        [Selection(a.id, Decimal("1"))],
        options=PaymentOptions(mark_as_paid=True, paid_date=paid_at, notes="Acompte"),
    )

    assert result.invoice.status == InvoiceStatus.PAID
    assert result.invoice.paid_date == paid_at
    assert result.invoice.notes == "Acompte"


def test_payment_link_is_attached(user, make_quote, gateway):
    quote = make_quote()
    a = _lines(quote)["A"]

    result = convert(
        user.id,
        quote.id,
        [Selection(a.id, Decimal("3"))],
        options=PaymentOptions(generate_payment_link=True),
        gateway=gateway,
    )

    assert result.warnings == []
    assert result.invoice.payment_link == "https://pay.wave.com/c/cos-1"
    assert result.invoice.checkout_session_id == "cos-1"
    _, kwargs = gateway.calls[0]
    assert kwargs["client_reference"] == result.invoice.invoice_number
    assert kwargs["success_url"].startswith("https://books.example/invoices/")


def test_payment_link_failure_keeps_the_invoice(user, make_quote, gateway):
    quote = make_quote()
    a = _lines(quote)["A"]
    gateway.fail("create_checkout_session", "http-500", status_code=500)

    result = convert(
        user.id,
        quote.id,
        [Selection(a.id, Decimal("3"))],
        options=PaymentOptions(generate_payment_link=True),
        gateway=gateway,
    )

    assert [w["code"] for w in result.warnings] == ["payment-link-failed"]
    assert result.invoice.payment_link is None
    assert _billed_count(user.id) == 1


def test_payment_link_skipped_without_gateway(user, make_quote):
    quote = make_quote()
    a = _lines(quote)["A"]

    result = convert(
        user.id, quote.id, [Selection(a.id, Decimal("1"))], options=PaymentOptions(generate_payment_link=True)
    )

    assert [w["code"] for w in result.warnings] == ["payment-link-skipped"]


def test_lost_race_is_retried(user, make_quote, monkeypatch):
    quote = make_quote()
    a = _lines(quote)["A"]
    real = conversion._convert_once
    calls = []

    def flaky(*args):
        calls.append(args)
        if len(calls) == 1:
            raise StaleDataError("version mismatch")
        return real(*args)

    monkeypatch.setattr(conversion, "_convert_once", flaky)

    result = convert(user.id, quote.id, [Selection(a.id, Decimal("4"))])

    assert len(calls) == 2
    assert result.invoice.amount == Decimal("4000")
    assert _billed_count(user.id) == 1


def test_persistent_race_raises_consistency_error(app, user, make_quote, monkeypatch):
    quote = make_quote()
    a = _lines(quote)["A"]
    calls = []

    def always_stale(*args):
        calls.append(args)
        raise StaleDataError("version mismatch")

    monkeypatch.setattr(conversion, "_convert_once", always_stale)

    with pytest.raises(ConsistencyError) as exc:
        convert(user.id, quote.id, [Selection(a.id, Decimal("4"))])

    assert len(calls) == app.config["CONVERSION_MAX_RETRIES"]
    assert exc.value.http_status == 409
    assert _billed_count(user.id) == 0


@pytest.mark.parametrize("quantity", ["0.0001", "1.2345"])
def test_rejects_quantities_finer_than_the_ledger(user, make_quote, quantity):
    quote = make_quote()
    a = _lines(quote)["A"]

    with pytest.raises(InvalidSelectionError) as exc:
        convert(user.id, quote.id, [Selection(a.id, Decimal(quantity))])

    assert "3 decimal places" in exc.value.message
    assert _billed_count(user.id) == 0


def test_trailing_zeros_are_not_extra_places(user, make_quote):
    quote = make_quote()
    a = _lines(quote)["A"]

    result = convert(user.id, quote.id, [Selection(a.id, Decimal("1.50000"))])

    assert result.invoice.amount == Decimal("1500")


def test_concurrent_conversion_in_another_session(file_app, monkeypatch):
    owner = User(name="Awa Koné", email="awa@example.com")
    db.session.add(owner)
    db.session.commit()
    client = Client(user_id=owner.id, name="Acme SARL")
    project = Project(user_id=owner.id, name="Site vitrine", client=client)
    db.session.add_all([client, project])
    db.session.commit()
    quote = create_quote(
        owner.id,
        project_id=project.id,
        services=[ServiceInput.from_dict({"name": "A", "unit_price": "1000", "quantity": "10"})],
    )
    line_id = quote.service_lines[0].id
    user_id, quote_id = owner.id, quote.id

    real = conversion._validate_selections
    competitor = {}

    def validate_after_competitor(selections, status):
        # Runs once, after this session has read the ledger and before it writes
        if not competitor:
            with file_app.app_context():
                competitor["result"] = convert(user_id, quote_id, [Selection(line_id, Decimal("6"))])
                competitor["number"] = competitor["result"].invoice.invoice_number
        return real(selections, status)

    monkeypatch.setattr(conversion, "_validate_selections", validate_after_competitor)

    with pytest.raises(InvalidSelectionError) as exc:
        convert(user_id, quote_id, [Selection(line_id, Decimal("6"))])

    assert Decimal(exc.value.details["remaining_quantity"]) == Decimal("4")
    assert competitor["number"].endswith("-001")
    status = remaining(user_id, quote_id)
    assert status.for_service(line_id).invoiced_quantity == Decimal("6")
    assert status.for_service(line_id).invoiced_quantity <= Decimal("10")
    assert _billed_count(user_id) == 1
