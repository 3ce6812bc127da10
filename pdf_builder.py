import io
import logging
from collections import namedtuple

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from invoice_utils import ZERO, check_exportable, format_currency, parse_decimal, to_money

logger = logging.getLogger(__name__)

PDF_MIMETYPE = 'application/pdf'

TextInstruction = namedtuple('TextInstruction', ['text', 'x', 'y', 'font', 'size'])


def pdf_filename(invoice_number):
    return f"invoice-{invoice_number}.pdf"


class PdfLayout:
    """
    Fixed page geometry for the invoice PDF.

    Offsets are in millimetres measured from the top-left corner of the page.
    Rows are emitted from ``table_y`` downwards in steps of ``row_height``;
    there is no page break, so very long item lists run off the page.
    """
    page_size = A4
    font = 'Helvetica'
    bold_font = 'Helvetica-Bold'
    title_size = 20
    body_size = 12

    left = 20
    title_y = 30
    invoice_number_y = 50
    issue_date_y = 60
    due_date_y = 70
    bill_to_y = 90
    client_name_y = 100
    client_address_y = 110

    table_y = 130
    row_height = 10
    description_x = 20
    quantity_x = 120
    rate_x = 140
    amount_x = 160

    totals_x = 120
    totals_gap = 10

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(PdfLayout, key):
                raise TypeError(f"Unknown layout setting: {key}")
            setattr(self, key, value)


class InvoicePDF:
    def __init__(self, invoice_data, layout=None):
        self.invoice_data = invoice_data
        self.layout = layout or PdfLayout()

    def _text(self, text, x, y, bold=False, size=None):
        layout = self.layout
        return TextInstruction(
            '' if text is None else str(text), x, y,
            layout.bold_font if bold else layout.font,
            size or layout.body_size,
        )

    def layout_instructions(self):
        check_exportable(self.invoice_data)
        data = self.invoice_data
        layout = self.layout
        client = data['client']
        left = layout.left

        # Title and header fields
        instructions = [
            self._text("INVOICE", left, layout.title_y, bold=True, size=layout.title_size),
            self._text(f"Invoice #: {data['invoice_number']}", left, layout.invoice_number_y),
            self._text(f"Issue Date: {data.get('issue_date', '')}", left, layout.issue_date_y),
            self._text(f"Due Date: {data.get('due_date', '')}", left, layout.due_date_y),
            self._text("Bill To:", left, layout.bill_to_y),
            self._text(client['name'], left, layout.client_name_y),
        ]
        address = client.get('address')
        if address:
            address = ', '.join(line.strip() for line in str(address).splitlines() if line.strip())
            instructions.append(self._text(address, left, layout.client_address_y))

        # Item table
        y = layout.table_y
        for label, x in (("Description", layout.description_x), ("Qty", layout.quantity_x),
                         ("Rate", layout.rate_x), ("Amount", layout.amount_x)):
            instructions.append(self._text(label, x, y, bold=True))

        for item in data['items']:
            y += layout.row_height
            instructions.extend([
                self._text(item['description'], layout.description_x, y),
                self._text(item.get('quantity', ''), layout.quantity_x, y),
                self._text(format_currency(item.get('rate')), layout.rate_x, y),
                self._text(format_currency(item.get('amount')), layout.amount_x, y),
            ])

        # Totals
        y += layout.row_height + layout.totals_gap
        instructions.append(self._text(f"Subtotal: {format_currency(data.get('subtotal'))}", layout.totals_x, y))
        discount = parse_decimal(data.get('discount'))
        if discount > ZERO:
            y += layout.row_height
            instructions.append(self._text(f"Discount: {to_money(discount)}%", layout.totals_x, y))
        tax = parse_decimal(data.get('tax'))
        if tax > ZERO:
            y += layout.row_height
            instructions.append(self._text(f"Tax: {to_money(tax)}%", layout.totals_x, y))
        y += layout.row_height
        instructions.append(self._text(f"Total: {format_currency(data.get('total'))}", layout.totals_x, y, bold=True))

        return instructions

    def generate(self, target=None):
        """Render the invoice and return the PDF bytes, also writing them to ``target`` if given."""
        instructions = self.layout_instructions()
        _, page_height = self.layout.page_size

        buffer = io.BytesIO()
        # invariant mode drops timestamps and random document ids
        pdf = canvas.Canvas(buffer, pagesize=self.layout.page_size, invariant=1)
        pdf.setTitle(f"Invoice {self.invoice_data['invoice_number']}")
        for ins in instructions:
            pdf.setFont(ins.font, ins.size)
            pdf.drawString(ins.x * mm, page_height - ins.y * mm, ins.text)
        pdf.showPage()
        pdf.save()
        content = buffer.getvalue()

        if isinstance(target, str):
            with open(target, 'wb') as f:
                f.write(content)
        elif target is not None:
            target.write(content)

        logger.debug("Rendered PDF for invoice %s (%d bytes)", self.invoice_data['invoice_number'], len(content))
        return content


def render_pdf(invoice_data):
    return InvoicePDF(invoice_data).generate()
