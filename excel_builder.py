import io
import logging

from openpyxl import Workbook

from invoice_utils import check_exportable, parse_decimal

logger = logging.getLogger(__name__)

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
SHEET_TITLE = 'Invoice'
ITEM_HEADER = ['Description', 'Quantity', 'Rate', 'Amount']


def xlsx_filename(invoice_number):
    return f"invoice-{invoice_number}.xlsx"


def _text(value):
    return '' if value is None else str(value)


def _number(value):
    # stored values are already Decimals; anything else is coerced like user input
    return value if isinstance(value, (int, float)) and not isinstance(value, bool) else parse_decimal(value)


def spreadsheet_rows(invoice_data):
    """
    Flatten an invoice into sheet rows.

    Consumers read this sheet by position, so the order is fixed:
    header fields, blank, client block, blank, item table, blank, summary.
    Blank rows are empty lists. Summary values sit in the fourth column.
    """
    check_exportable(invoice_data)
    client = invoice_data['client']

    rows = [
        ['Invoice Number', _text(invoice_data['invoice_number'])],
        ['Issue Date', _text(invoice_data.get('issue_date'))],
        ['Due Date', _text(invoice_data.get('due_date'))],
        ['Status', _text(invoice_data.get('status'))],
        [],
        ['Bill To'],
        ['Client Name', _text(client.get('name'))],
        ['Email', _text(client.get('email'))],
        ['Phone', _text(client.get('phone'))],
        ['Address', _text(client.get('address'))],
        [],
        ['Items'],
        list(ITEM_HEADER),
    ]
    for item in invoice_data['items']:
        rows.append([
            item['description'],
            _number(item.get('quantity')),
            _number(item.get('rate')),
            _number(item.get('amount')),
        ])
    rows.extend([
        [],
        ['Subtotal', None, None, _number(invoice_data.get('subtotal'))],
        ['Discount (%)', None, None, _number(invoice_data.get('discount'))],
        ['Tax (%)', None, None, _number(invoice_data.get('tax'))],
        ['Total', None, None, _number(invoice_data.get('total'))],
    ])
    return rows


class InvoiceWorkbook:
    def __init__(self, invoice_data):
        self.invoice_data = invoice_data

    def build(self):
        rows = spreadsheet_rows(self.invoice_data)
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = SHEET_TITLE
        for row in rows:
            sheet.append(row)
        # text starting with '=' must stay text, never a formula
        for row in sheet.iter_rows():
            for cell in row:
                if isinstance(cell.value, str):
                    cell.data_type = 's'
        return workbook

    def generate(self, target=None):
        """Return the .xlsx bytes, also writing them to ``target`` if given."""
        buffer = io.BytesIO()
        self.build().save(buffer)
        content = buffer.getvalue()

        if isinstance(target, str):
            with open(target, 'wb') as f:
                f.write(content)
        elif target is not None:
            target.write(content)

        logger.debug("Rendered workbook for invoice %s (%d bytes)", self.invoice_data['invoice_number'], len(content))
        return content


def render_spreadsheet(invoice_data):
    return InvoiceWorkbook(invoice_data).generate()
