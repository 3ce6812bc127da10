import datetime
import logging
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from models import db, Company, BankDetails, Client, Invoice, InvoiceItem, PaymentSettings
from invoice_utils import (
    InvoiceValidationError, PAID, DRAFT, HUNDRED, ZERO,
    apply_discount_and_tax, effective_status, aggregate_stats, normalize_status,
    parse_decimal, to_money, validate_invoice_data,
)

logger = logging.getLogger(__name__)

COMPANY_FIELDS = ('name', 'email', 'phone', 'address', 'registration_number', 'logo_url')
BANK_DETAILS_FIELDS = ('bank_name', 'account_holder', 'account_number', 'routing_number', 'swift_code')
CLIENT_FIELDS = ('name', 'email', 'phone', 'contact_person', 'address')
INVOICE_FIELDS = ('client_id', 'invoice_number', 'issue_date', 'due_date', 'status',
                  'discount', 'tax', 'notes', 'terms')
PAYMENT_SETTINGS_FIELDS = ('stripe_account_id', 'paypal_account_id', 'bank_transfer_enabled',
                           'default_payment_terms', 'late_fee_percentage')

DEFAULT_PAYMENT_TERMS = 30


def _commit():
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Database commit failed")
        raise


def _pick(data, fields):
    return {k: data[k] for k in fields if k in data}


def _parse_date(value):
    if value is None or value == '':
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    try:
        return datetime.datetime.strptime(str(value)[:10], '%Y-%m-%d').date()
    except ValueError:
        return None


def to_json_ready(value):
    """Convert Decimals and dates inside nested dicts/lists to JSON friendly values."""
    if isinstance(value, dict):
        return {k: to_json_ready(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_ready(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    return value


# ------------------------------------------------------------------
# Companies
# ------------------------------------------------------------------

def _company_dict(company):
    data = {'id': company.id, 'user_id': company.user_id, 'created_at': company.created_at}
    data.update({f: getattr(company, f) for f in COMPANY_FIELDS})
    data['bank_details'] = [_bank_details_dict(b) for b in company.bank_details]
    return data


def _bank_details_dict(bank):
    data = {'id': bank.id, 'company_id': bank.company_id}
    data.update({f: getattr(bank, f) for f in BANK_DETAILS_FIELDS})
    return data


def _require_name(data):
    if not str(data.get('name') or '').strip():
        raise InvoiceValidationError(["Name is required"])


def get_company(user_id):
    company = Company.query.filter_by(user_id=user_id).first()
    return _company_dict(company) if company else None


def create_company(user_id, data):
    _require_name(data)
    company = Company(user_id=user_id, **_pick(data, COMPANY_FIELDS))
    db.session.add(company)
    _commit()
    return _company_dict(company)


def update_company(user_id, company_id, data):
    company = Company.query.filter_by(id=company_id, user_id=user_id).first()
    if not company:
        return None
    fields = _pick(data, COMPANY_FIELDS)
    if 'name' in fields:
        _require_name(fields)
    for key, value in fields.items():
        setattr(company, key, value)
    _commit()
    return _company_dict(company)


def create_bank_details(user_id, data):
    company = Company.query.filter_by(id=data.get('company_id'), user_id=user_id).first()
    if not company:
        return None
    fields = _pick(data, BANK_DETAILS_FIELDS)
    missing = [f for f in ('bank_name', 'account_holder', 'account_number') if not fields.get(f)]
    if missing:
        raise InvoiceValidationError([f"{f} is required" for f in missing])
    bank = BankDetails(company_id=company.id, **fields)
    db.session.add(bank)
    _commit()
    return _bank_details_dict(bank)


def update_bank_details(user_id, company_id, data):
    company = Company.query.filter_by(id=company_id, user_id=user_id).first()
    if not company or not company.bank_details:
        return None
    bank = company.bank_details[0]
    for key, value in _pick(data, BANK_DETAILS_FIELDS).items():
        setattr(bank, key, value)
    _commit()
    return _bank_details_dict(bank)


# ------------------------------------------------------------------
# Clients
# ------------------------------------------------------------------

def _client_dict(client):
    data = {'id': client.id, 'user_id': client.user_id, 'created_at': client.created_at}
    data.update({f: getattr(client, f) for f in CLIENT_FIELDS})
    return data


def get_clients(user_id):
    clients = Client.query.filter_by(user_id=user_id).order_by(Client.created_at.desc(), Client.id.desc()).all()
    return [_client_dict(c) for c in clients]


def get_client(user_id, client_id):
    client = Client.query.filter_by(id=client_id, user_id=user_id).first()
    return _client_dict(client) if client else None


def create_client(user_id, data):
    _require_name(data)
    client = Client(user_id=user_id, **_pick(data, CLIENT_FIELDS))
    db.session.add(client)
    _commit()
    return _client_dict(client)


def update_client(user_id, client_id, data):
    client = Client.query.filter_by(id=client_id, user_id=user_id).first()
    if not client:
        return None
    fields = _pick(data, CLIENT_FIELDS)
    if 'name' in fields:
        _require_name(fields)
    for key, value in fields.items():
        setattr(client, key, value)
    _commit()
    return _client_dict(client)


def delete_client(user_id, client_id):
    """Returns None if missing, False if the client still has invoices."""
    client = Client.query.filter_by(id=client_id, user_id=user_id).first()
    if not client:
        return None
    if client.invoices:
        return False
    db.session.delete(client)
    _commit()
    return True


# ------------------------------------------------------------------
# Invoices
# ------------------------------------------------------------------

def _build_item(item_data):
    description = str(item_data.get('description') or '').strip()
    quantity = to_money(item_data.get('quantity'))
    rate = to_money(item_data.get('rate'))

    errors = []
    if not description:
        errors.append("Item description is required")
    if quantity < ZERO:
        errors.append("Item quantity must not be negative")
    if rate < ZERO:
        errors.append("Item rate must not be negative")
    if errors:
        raise InvoiceValidationError(errors)

    return InvoiceItem(description=description, quantity=quantity, rate=rate,
                       amount=to_money(quantity * rate))


def _apply_items_and_totals(invoice, items=None):
    """
    Replace the invoice's items (when given) and recompute its stored totals.

    Every write path for invoices goes through here. The subtotal is the sum
    of the stored item amounts, so it always equals what the items add up to.
    """
    if items is not None:
        invoice.items = [_build_item(i) for i in items]

    invoice.discount = to_money(invoice.discount)
    invoice.tax = to_money(invoice.tax)
    subtotal = sum((to_money(i.amount) for i in invoice.items), ZERO)
    totals = apply_discount_and_tax(subtotal, invoice.discount, invoice.tax)
    invoice.subtotal = to_money(totals['subtotal'])
    invoice.total = to_money(totals['total'])
    return totals


def _default_due_date(user_id, issue_date):
    settings = PaymentSettings.query.filter_by(user_id=user_id).first()
    terms = settings.default_payment_terms if settings and settings.default_payment_terms is not None \
        else DEFAULT_PAYMENT_TERMS
    return issue_date + datetime.timedelta(days=terms)


def _prepare_invoice_fields(user_id, fields, invoice_id=None):
    errors = validate_invoice_data(fields)

    for key in ('discount', 'tax'):
        value = parse_decimal(fields.get(key))
        if value < ZERO or value > HUNDRED:
            errors.append(f"{key.capitalize()} must be between 0 and 100")

    if fields.get('client_id') and not Client.query.filter_by(id=fields['client_id'], user_id=user_id).first():
        errors.append("Client not found")

    number = str(fields.get('invoice_number') or '').strip()
    if number:
        clash = Invoice.query.filter(Invoice.invoice_number == number)
        if invoice_id is not None:
            clash = clash.filter(Invoice.id != invoice_id)
        if clash.first():
            errors.append("Invoice number already exists")

    if errors:
        raise InvoiceValidationError(errors)

    fields['invoice_number'] = number
    fields['status'] = normalize_status(fields.get('status')) or DRAFT
    fields['issue_date'] = _parse_date(fields['issue_date'])
    fields['due_date'] = _parse_date(fields['due_date'])
    return fields


def _mark_paid_at(invoice, previous_status):
    if invoice.status == PAID and previous_status != PAID:
        invoice.paid_at = datetime.datetime.utcnow()
    elif invoice.status != PAID:
        invoice.paid_at = None


def create_invoice(user_id, data, items):
    """Create an invoice and its items in one transaction."""
    if not items:
        raise InvoiceValidationError(["At least one item is required"])

    fields = _pick(data, INVOICE_FIELDS)
    if not fields.get('issue_date'):
        fields['issue_date'] = datetime.date.today()
    issue_date = _parse_date(fields['issue_date'])
    if not fields.get('due_date') and issue_date:
        fields['due_date'] = _default_due_date(user_id, issue_date)
    fields = _prepare_invoice_fields(user_id, fields)

    invoice = Invoice(user_id=user_id, **fields)
    _apply_items_and_totals(invoice, items)
    _mark_paid_at(invoice, None)
    db.session.add(invoice)
    _commit()
    logger.info("Created invoice %s (%s items, total %s)", invoice.invoice_number, len(invoice.items), invoice.total)
    return get_invoice_details(user_id, invoice.id)


def update_invoice(user_id, invoice_id, data, items=None):
    invoice = Invoice.query.filter_by(id=invoice_id, user_id=user_id).first()
    if not invoice:
        return None
    if items is not None and not items:
        raise InvoiceValidationError(["At least one item is required"])

    fields = {k: getattr(invoice, k) for k in INVOICE_FIELDS}
    fields.update(_pick(data, INVOICE_FIELDS))
    fields = _prepare_invoice_fields(user_id, fields, invoice_id=invoice.id)

    previous_status = invoice.status
    for key, value in fields.items():
        setattr(invoice, key, value)
    _apply_items_and_totals(invoice, items)
    _mark_paid_at(invoice, previous_status)
    _commit()
    return get_invoice_details(user_id, invoice.id)


def update_invoice_status(user_id, invoice_id, new_status):
    return update_invoice(user_id, invoice_id, {'status': new_status})


def delete_invoice(user_id, invoice_id):
    invoice = Invoice.query.filter_by(id=invoice_id, user_id=user_id).first()
    if not invoice:
        return False
    # the items cascade and are deleted ahead of the invoice row
    db.session.delete(invoice)
    _commit()
    return True


def _invoice_dict(invoice, now=None):
    client = invoice.client
    return {
        'id': invoice.id,
        'user_id': invoice.user_id,
        'client_id': invoice.client_id,
        'invoice_number': invoice.invoice_number,
        'issue_date': invoice.issue_date,
        'due_date': invoice.due_date,
        'status': invoice.status,
        'effective_status': effective_status(invoice.status, invoice.due_date, now),
        'subtotal': invoice.subtotal,
        'discount': invoice.discount,
        'tax': invoice.tax,
        'total': invoice.total,
        'notes': invoice.notes,
        'terms': invoice.terms,
        'paid_at': invoice.paid_at,
        'created_at': invoice.created_at,
        'client': _client_dict(client) if client else None,
        'items': [
            {
                'id': i.id,
                'description': i.description,
                'quantity': i.quantity,
                'rate': i.rate,
                'amount': i.amount,
            }
            for i in invoice.items
        ],
    }


def get_invoices(user_id, now=None):
    invoices = Invoice.query.filter_by(user_id=user_id).order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()
    return [_invoice_dict(inv, now) for inv in invoices]


def get_invoice_details(user_id, invoice_id, now=None):
    """Invoice joined with its client and items, or None."""
    invoice = Invoice.query.filter_by(id=invoice_id, user_id=user_id).first()
    if not invoice:
        return None
    return _invoice_dict(invoice, now)


def get_user_invoice_summaries(user_id):
    rows = db.session.query(Invoice.status, Invoice.total, Invoice.due_date).filter(Invoice.user_id == user_id).all()
    return [{'status': status, 'total': total, 'due_date': due_date} for status, total, due_date in rows]


def get_invoice_stats(user_id, now=None):
    return aggregate_stats(get_user_invoice_summaries(user_id), now)


# ------------------------------------------------------------------
# Payment settings
# ------------------------------------------------------------------

def _payment_settings_dict(settings):
    data = {'id': settings.id, 'user_id': settings.user_id}
    data.update({f: getattr(settings, f) for f in PAYMENT_SETTINGS_FIELDS})
    return data


def get_payment_settings(user_id):
    settings = PaymentSettings.query.filter_by(user_id=user_id).first()
    return _payment_settings_dict(settings) if settings else None


def upsert_payment_settings(user_id, data):
    fields = _pick(data, PAYMENT_SETTINGS_FIELDS)
    errors = []
    if 'default_payment_terms' in fields:
        try:
            fields['default_payment_terms'] = int(fields['default_payment_terms'])
        except (TypeError, ValueError):
            errors.append("Default payment terms must be a whole number of days")
        else:
            if fields['default_payment_terms'] < 0:
                errors.append("Default payment terms must not be negative")
    if 'late_fee_percentage' in fields:
        fields['late_fee_percentage'] = to_money(fields['late_fee_percentage'])
        if not ZERO <= fields['late_fee_percentage'] <= HUNDRED:
            errors.append("Late fee percentage must be between 0 and 100")
    if 'bank_transfer_enabled' in fields:
        fields['bank_transfer_enabled'] = bool(fields['bank_transfer_enabled'])
    if errors:
        raise InvoiceValidationError(errors)

    settings = PaymentSettings.query.filter_by(user_id=user_id).first()
    if settings:
        for key, value in fields.items():
            setattr(settings, key, value)
    else:
        settings = PaymentSettings(user_id=user_id, **fields)
        db.session.add(settings)
    _commit()
    return _payment_settings_dict(settings)
