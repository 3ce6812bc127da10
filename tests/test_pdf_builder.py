import copy
import io

import pytest

from invoice_utils import InvoiceExportError
from pdf_builder import InvoicePDF, PdfLayout, PDF_MIMETYPE, pdf_filename, render_pdf


def _texts(instructions):
    return [ins.text for ins in instructions]


def _find(instructions, text):
    return next(ins for ins in instructions if ins.text == text)


class TestLayoutInstructions:
    def test_title_and_header_fields(self, invoice_data):
        instructions = InvoicePDF(invoice_data).layout_instructions()

        assert instructions[0].text == "INVOICE"
        assert instructions[0].font == 'Helvetica-Bold'
        assert _texts(instructions)[1:4] == [
            "Invoice #: INV-001",
            "Issue Date: 2024-01-01",
            "Due Date: 2024-01-31",
        ]

    def test_bill_to_block(self, invoice_data):
        texts = _texts(InvoicePDF(invoice_data).layout_instructions())
        assert texts[4:7] == ["Bill To:", "Acme Corp", "1 Main Street"]

    @pytest.mark.parametrize("address", [None, ""])
    def test_address_is_omitted_when_absent(self, invoice_data, address):
        invoice_data['client']['address'] = address
        instructions = InvoicePDF(invoice_data).layout_instructions()
        layout = PdfLayout()

        assert all(ins.y != layout.client_address_y for ins in instructions)
        assert _texts(instructions)[4:7] == ["Bill To:", "Acme Corp", "Description"]

    def test_multiline_address_is_joined(self, invoice_data):
        invoice_data['client']['address'] = "1 Main Street\nSpringfield\n"
        texts = _texts(InvoicePDF(invoice_data).layout_instructions())
        assert "1 Main Street, Springfield" in texts

    def test_item_rows_advance_by_row_height(self, invoice_data):
        layout = PdfLayout()
        instructions = InvoicePDF(invoice_data).layout_instructions()

        header = _find(instructions, "Description")
        first = _find(instructions, "Design work")
        second = _find(instructions, "Hosting")
        assert header.y == layout.table_y
        assert first.y == layout.table_y + layout.row_height
        assert second.y == first.y + layout.row_height
        assert first.x == layout.description_x

    def test_item_cells(self, invoice_data):
        texts = _texts(InvoicePDF(invoice_data).layout_instructions())
        row_start = texts.index("Design work")
        assert texts[row_start:row_start + 4] == ["Design work", "2.00", "$50.00", "$100.00"]

    def test_totals_block(self, invoice_data):
        texts = _texts(InvoicePDF(invoice_data).layout_instructions())
        assert texts[-4:] == ["Subtotal: $125.00", "Discount: 10.00%", "Tax: 5.00%", "Total: $118.13"]

    def test_zero_discount_and_tax_are_omitted(self, invoice_data):
        invoice_data['discount'] = '0'
        invoice_data['tax'] = None
        invoice_data['total'] = invoice_data['subtotal']
        instructions = InvoicePDF(invoice_data).layout_instructions()

        assert _texts(instructions)[-2:] == ["Subtotal: $125.00", "Total: $125.00"]
        subtotal, total = instructions[-2:]
        assert total.y == subtotal.y + PdfLayout().row_height

    def test_only_tax(self, invoice_data):
        invoice_data['discount'] = 0
        texts = _texts(InvoicePDF(invoice_data).layout_instructions())
        assert texts[-3:] == ["Subtotal: $125.00", "Tax: 5.00%", "Total: $118.13"]

    def test_custom_layout(self, invoice_data):
        layout = PdfLayout(row_height=6, table_y=100)
        instructions = InvoicePDF(invoice_data, layout=layout).layout_instructions()
        assert _find(instructions, "Hosting").y == 112

    def test_unknown_layout_setting(self):
        with pytest.raises(TypeError):
            PdfLayout(column_count=3)

    def test_missing_description_fails(self, invoice_data):
        del invoice_data['items'][0]['description']
        with pytest.raises(InvoiceExportError):
            InvoicePDF(invoice_data).layout_instructions()


class TestGenerate:
    def test_produces_pdf_bytes(self, invoice_data):
        content = render_pdf(invoice_data)
        assert content.startswith(b'%PDF')
        assert content.rstrip().endswith(b'%%EOF')

    def test_output_is_deterministic(self, invoice_data):
        assert render_pdf(invoice_data) == render_pdf(copy.deepcopy(invoice_data))

    def test_does_not_mutate_input(self, invoice_data):
        snapshot = copy.deepcopy(invoice_data)
        render_pdf(invoice_data)
        assert invoice_data == snapshot

    def test_writes_to_file_object(self, invoice_data):
        buffer = io.BytesIO()
        content = InvoicePDF(invoice_data).generate(buffer)
        assert buffer.getvalue() == content

    def test_writes_to_path(self, invoice_data, tmp_path):
        target = tmp_path / "out.pdf"
        content = InvoicePDF(invoice_data).generate(str(target))
        assert target.read_bytes() == content

    def test_missing_description_writes_nothing(self, invoice_data):
        invoice_data['items'][1]['description'] = None
        buffer = io.BytesIO()
        with pytest.raises(InvoiceExportError):
            InvoicePDF(invoice_data).generate(buffer)
        assert buffer.getvalue() == b''


def test_filename_and_mimetype():
    assert pdf_filename("INV-7") == "invoice-INV-7.pdf"
    assert PDF_MIMETYPE == "application/pdf"
