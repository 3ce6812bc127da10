import os

# must be set before the app module is imported
os.environ['DATABASE_URL'] = 'sqlite://'

import datetime
from decimal import Decimal

import pytest

from app import app as flask_app
from models import db


@pytest.fixture
def app():
    """Flask app backed by a fresh in-memory database."""
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def app_context(app):
    with app.app_context():
        yield
        db.session.remove()


@pytest.fixture
def auth_headers():
    return {'X-User-Id': '1'}


@pytest.fixture
def invoice_data():
    """Invoice-with-details aggregate as returned by db_manager.get_invoice_details."""
    return {
        'id': 1,
        'invoice_number': 'INV-001',
        'issue_date': datetime.date(2024, 1, 1),
        'due_date': datetime.date(2024, 1, 31),
        'status': 'pending',
        'client': {
            'name': 'Acme Corp',
            'email': 'billing@acme.test',
            'phone': '555-0100',
            'address': '1 Main Street',
        },
        'items': [
            {'description': 'Design work', 'quantity': Decimal('2.00'), 'rate': Decimal('50.00'),
             'amount': Decimal('100.00')},
            {'description': 'Hosting', 'quantity': Decimal('1.00'), 'rate': Decimal('25.00'),
             'amount': Decimal('25.00')},
        ],
        'subtotal': Decimal('125.00'),
        'discount': Decimal('10.00'),
        'tax': Decimal('5.00'),
        'total': Decimal('118.13'),
    }
