from flask import Flask, request, jsonify, send_file, g
from flask_cors import CORS
from flask_migrate import Migrate, upgrade
from sqlalchemy.exc import SQLAlchemyError
from functools import wraps
import io
import logging
import os

import db_manager
from models import db
from invoice_utils import InvoiceValidationError, generate_invoice_number
from pdf_builder import InvoicePDF, PDF_MIMETYPE, pdf_filename
from excel_builder import InvoiceWorkbook, XLSX_MIMETYPE, xlsx_filename

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Database Config
def get_db_uri():
    if os.environ.get('DATABASE_URL'):
        return os.environ['DATABASE_URL']
    if os.environ.get('FLASK_ENV') == 'production':
        os.makedirs(app.instance_path, exist_ok=True)
        return f"sqlite:///{os.path.join(app.instance_path, 'invoices.db')}"
    base_path = os.path.dirname(os.path.abspath(__file__))
    return f"sqlite:///{os.path.join(base_path, 'invoices.db')}"

app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-me')
app.config['SQLALCHEMY_DATABASE_URI'] = get_db_uri()
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

db.init_app(app)
migrate = Migrate(app, db)
CORS(app)

with app.app_context():
    migration_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')
    if os.path.exists(migration_dir):
        try:
            upgrade(directory=migration_dir)
            logger.info("Database migrated successfully.")
        except Exception:
            logger.exception("Migration failed, falling back to db.create_all()")
            db.create_all()
    else:
        db.create_all()


# ------------------------------------------------------------------
# Auth and error handling
# ------------------------------------------------------------------

def login_required(view):
    """The session layer in front of us passes the user id in X-User-Id."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        try:
            g.user_id = int(request.headers.get('X-User-Id', ''))
        except ValueError:
            return jsonify({'error': 'Unauthorized'}), 401
        return view(*args, **kwargs)
    return wrapper


@app.errorhandler(InvoiceValidationError)
def handle_validation_error(error):
    return jsonify({'error': 'Validation failed', 'details': error.errors}), 400


@app.errorhandler(SQLAlchemyError)
def handle_database_error(error):
    logger.exception("Database error while handling %s %s", request.method, request.path)
    return jsonify({'error': 'Database error'}), 500


def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _not_found(what):
    return jsonify({'error': f'{what} not found'}), 404


# ------------------------------------------------------------------
# Company and bank details
# ------------------------------------------------------------------

@app.route('/api/company', methods=['GET', 'POST'])
@login_required
def company():
    if request.method == 'POST':
        return jsonify(db_manager.to_json_ready(db_manager.create_company(g.user_id, _json_body()))), 201

    company = db_manager.get_company(g.user_id)
    if not company:
        return _not_found('Company')
    return jsonify(db_manager.to_json_ready(company))


@app.route('/api/company/<int:company_id>', methods=['PUT'])
@login_required
def update_company(company_id):
    company = db_manager.update_company(g.user_id, company_id, _json_body())
    if not company:
        return _not_found('Company')
    return jsonify(db_manager.to_json_ready(company))


@app.route('/api/bank-details', methods=['POST'])
@login_required
def create_bank_details():
    bank = db_manager.create_bank_details(g.user_id, _json_body())
    if not bank:
        return _not_found('Company')
    return jsonify(bank), 201


@app.route('/api/bank-details/<int:company_id>', methods=['PUT'])
@login_required
def update_bank_details(company_id):
    bank = db_manager.update_bank_details(g.user_id, company_id, _json_body())
    if not bank:
        return _not_found('Bank details')
    return jsonify(bank)


# ------------------------------------------------------------------
# Clients
# ------------------------------------------------------------------

@app.route('/api/clients', methods=['GET', 'POST'])
@login_required
def clients():
    if request.method == 'POST':
        client = db_manager.create_client(g.user_id, _json_body())
        return jsonify(db_manager.to_json_ready(client)), 201

    return jsonify(db_manager.to_json_ready(db_manager.get_clients(g.user_id)))


@app.route('/api/clients/<int:client_id>', methods=['GET', 'PUT', 'DELETE'])
@login_required
def manage_client(client_id):
    if request.method == 'DELETE':
        deleted = db_manager.delete_client(g.user_id, client_id)
        if deleted is None:
            return _not_found('Client')
        if not deleted:
            return jsonify({'error': 'Client has invoices and cannot be deleted'}), 409
        return jsonify({'message': 'Client deleted successfully'})

    if request.method == 'PUT':
        client = db_manager.update_client(g.user_id, client_id, _json_body())
    else:
        client = db_manager.get_client(g.user_id, client_id)
    if not client:
        return _not_found('Client')
    return jsonify(db_manager.to_json_ready(client))


# ------------------------------------------------------------------
# Invoices
# ------------------------------------------------------------------

@app.route('/api/invoices', methods=['GET', 'POST'])
@login_required
def invoices():
    if request.method == 'POST':
        data = _json_body()
        invoice = db_manager.create_invoice(g.user_id, data.get('invoice') or {}, data.get('items') or [])
        return jsonify(db_manager.to_json_ready(invoice)), 201

    status_filter = (request.args.get('status') or '').lower()
    invoices = db_manager.get_invoices(g.user_id)
    if status_filter and status_filter != 'all':
        invoices = [inv for inv in invoices if inv['effective_status'] == status_filter]
    return jsonify(db_manager.to_json_ready(invoices))


@app.route('/api/invoices/<int:invoice_id>', methods=['GET', 'PUT', 'DELETE'])
@login_required
def manage_invoice(invoice_id):
    if request.method == 'DELETE':
        if not db_manager.delete_invoice(g.user_id, invoice_id):
            return _not_found('Invoice')
        return jsonify({'message': 'Invoice deleted successfully'})

    if request.method == 'PUT':
        data = _json_body()
        invoice = db_manager.update_invoice(g.user_id, invoice_id, data.get('invoice') or {}, data.get('items'))
    else:
        invoice = db_manager.get_invoice_details(g.user_id, invoice_id)
    if not invoice:
        return _not_found('Invoice')
    return jsonify(db_manager.to_json_ready(invoice))


@app.route('/api/invoices/<int:invoice_id>/status', methods=['POST'])
@login_required
def update_status(invoice_id):
    new_status = _json_body().get('status')
    if not new_status:
        return jsonify({'error': 'Status not provided'}), 400
    invoice = db_manager.update_invoice_status(g.user_id, invoice_id, new_status)
    if not invoice:
        return _not_found('Invoice')
    return jsonify(db_manager.to_json_ready(invoice))


@app.route('/api/invoices/stats')
@login_required
def invoice_stats():
    return jsonify(db_manager.get_invoice_stats(g.user_id))


@app.route('/api/invoices/next-number')
@login_required
def next_invoice_number():
    return jsonify({'invoice_number': generate_invoice_number()})


@app.route('/api/invoices/<int:invoice_id>/pdf')
@login_required
def download_pdf(invoice_id):
    invoice_data = db_manager.get_invoice_details(g.user_id, invoice_id)
    if not invoice_data:
        return _not_found('Invoice')

    try:
        content = InvoicePDF(invoice_data).generate()
    except Exception:
        logger.exception("Error generating PDF for invoice %s", invoice_id)
        return jsonify({'error': 'Failed to generate PDF'}), 500

    return send_file(
        io.BytesIO(content),
        as_attachment=True,
        download_name=pdf_filename(invoice_data['invoice_number']),
        mimetype=PDF_MIMETYPE
    )


@app.route('/api/invoices/<int:invoice_id>/excel')
@login_required
def download_excel(invoice_id):
    invoice_data = db_manager.get_invoice_details(g.user_id, invoice_id)
    if not invoice_data:
        return _not_found('Invoice')

    try:
        content = InvoiceWorkbook(invoice_data).generate()
    except Exception:
        logger.exception("Error generating Excel for invoice %s", invoice_id)
        return jsonify({'error': 'Failed to generate Excel'}), 500

    return send_file(
        io.BytesIO(content),
        as_attachment=True,
        download_name=xlsx_filename(invoice_data['invoice_number']),
        mimetype=XLSX_MIMETYPE
    )


# ------------------------------------------------------------------
# Payment settings
# ------------------------------------------------------------------

@app.route('/api/payment-settings', methods=['GET', 'POST'])
@login_required
def payment_settings():
    if request.method == 'POST':
        settings = db_manager.upsert_payment_settings(g.user_id, _json_body())
        return jsonify(db_manager.to_json_ready(settings))

    settings = db_manager.get_payment_settings(g.user_id)
    if not settings:
        return _not_found('Payment settings')
    return jsonify(db_manager.to_json_ready(settings))


if __name__ == '__main__':
    app.run(debug=os.environ.get('FLASK_DEBUG') == '1', port=int(os.environ.get('PORT', 5000)))
