import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

DRAFT = 'draft'
PENDING = 'pending'
PAID = 'paid'
OVERDUE = 'overdue'
CANCELLED = 'cancelled'

STATUSES = (DRAFT, PENDING, PAID, OVERDUE, CANCELLED)

ZERO = Decimal('0')
CENT = Decimal('0.01')
HUNDRED = Decimal('100')


class InvoiceValidationError(ValueError):
    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__('; '.join(self.errors))


class InvoiceExportError(Exception):
    pass


def check_exportable(invoice_data):
    """Raise InvoiceExportError unless every piece an exporter reads is present."""
    for key in ('invoice_number', 'client', 'items'):
        if invoice_data.get(key) is None:
            raise InvoiceExportError(f"Invoice is missing '{key}'")
    if not invoice_data['client'].get('name'):
        raise InvoiceExportError("Invoice client has no name")
    for position, item in enumerate(invoice_data['items'], start=1):
        if item.get('description') is None:
            raise InvoiceExportError(f"Item {position} has no description")


# ------------------------------------------------------------------
# Arithmetic
# ------------------------------------------------------------------

def parse_decimal(value):
    """Parse user input into a Decimal, falling back to zero."""
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        result = value
    else:
        text = str(value).strip()
        if not text:
            return ZERO
        try:
            result = Decimal(text)
        except (InvalidOperation, ValueError):
            return ZERO
    if not result.is_finite():
        return ZERO
    return result


def item_amount(quantity, rate):
    return parse_decimal(quantity) * parse_decimal(rate)


def calculate_subtotal(items):
    return sum((item_amount(i.get('quantity'), i.get('rate')) for i in items), ZERO)


def compute_totals(items, discount, tax):
    """
    Compute invoice totals from line items and discount/tax percentages.

    The discount comes off the subtotal first and tax is charged on what is
    left. Nothing is rounded here; callers round with to_money() when storing
    or format_currency() when displaying.
    """
    return apply_discount_and_tax(calculate_subtotal(items), discount, tax)


def apply_discount_and_tax(subtotal, discount, tax):
    subtotal = parse_decimal(subtotal)
    discount_amount = subtotal * parse_decimal(discount) / HUNDRED
    taxable_amount = subtotal - discount_amount
    tax_amount = taxable_amount * parse_decimal(tax) / HUNDRED
    return {
        'subtotal': subtotal,
        'discount_amount': discount_amount,
        'taxable_amount': taxable_amount,
        'tax_amount': tax_amount,
        'total': taxable_amount + tax_amount,
    }


def to_money(value):
    return parse_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_currency(value):
    return f"${to_money(value)}"


# ------------------------------------------------------------------
# Status derivation
# ------------------------------------------------------------------

def _as_date(value):
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def normalize_status(status):
    return str(status or '').strip().lower()


def effective_status(status, due_date, now=None):
    """
    Status shown to users and used for statistics.

    A pending invoice whose due date has passed reads as overdue. The stored
    status is never changed by this. Unparseable due dates count as not
    overdue.
    """
    status = normalize_status(status)
    if status != PENDING:
        return status

    due = _as_date(due_date)
    today = _as_date(now) if now is not None else datetime.date.today()
    if due is None or today is None:
        return status
    return OVERDUE if today > due else status


def is_overdue(status, due_date, now=None):
    return effective_status(status, due_date, now) == OVERDUE


# ------------------------------------------------------------------
# Statistics
# ------------------------------------------------------------------

def aggregate_stats(invoices, now=None):
    """Bucket a user's invoice totals into pending, paid and overdue."""
    if now is None:
        now = datetime.date.today()

    total_invoices = 0
    pending_amount = ZERO
    paid_amount = ZERO
    overdue_amount = ZERO

    for invoice in invoices:
        total_invoices += 1
        total = parse_decimal(invoice.get('total'))
        status = normalize_status(invoice.get('status'))

        if status == PAID:
            paid_amount += total
        elif effective_status(status, invoice.get('due_date'), now) == OVERDUE:
            overdue_amount += total
        else:
            # draft and cancelled land here too
            pending_amount += total

    return {
        'total_invoices': total_invoices,
        'pending_amount': format_currency(pending_amount),
        'paid_amount': format_currency(paid_amount),
        'overdue_amount': format_currency(overdue_amount),
    }


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------

def validate_invoice_data(data):
    errors = []

    if not str(data.get('invoice_number') or '').strip():
        errors.append("Invoice number is required")
    if not data.get('client_id'):
        errors.append("Client is required")

    issue_date = _as_date(data.get('issue_date'))
    due_date = _as_date(data.get('due_date'))
    for label, raw, parsed in (("Issue date", data.get('issue_date'), issue_date),
                               ("Due date", data.get('due_date'), due_date)):
        if not raw:
            errors.append(f"{label} is required")
        elif parsed is None:
            errors.append(f"{label} is not a valid date")
    if issue_date and due_date and due_date < issue_date:
        errors.append("Due date must be after issue date")

    status = data.get('status')
    if status and normalize_status(status) not in STATUSES:
        errors.append(f"Unknown status: {status}")

    return errors


def generate_invoice_number(now=None):
    """INV-YYYYMM-NNNNNN, the suffix being the tail of the epoch milliseconds."""
    if now is None:
        now = datetime.datetime.now()
    elif not isinstance(now, datetime.datetime):
        now = datetime.datetime.combine(now, datetime.time())
    millis = int(now.timestamp() * 1000)
    return f"INV-{now.year}{now.month:02d}-{str(millis)[-6:]}"
