"""Shared fixtures for the sync test suite."""
from unittest.mock import MagicMock

import pytest

from dead_letter import DeadLetterQueue
from mapping_store import MappingStore
from models import ApiOutcome, PowerBodyResult, SyncReport


@pytest.fixture
def store(tmp_path):
    s = MappingStore(tmp_path / "sync.sqlite")
    yield s
    s.close()


@pytest.fixture
def dead_letters(tmp_path):
    return DeadLetterQueue(tmp_path / "dead_letter")


@pytest.fixture
def powerbody():
    client = MagicMock()
    client.create_order.return_value = PowerBodyResult(outcome=ApiOutcome.SUCCESS, response={"api_response": "SUCCESS"})
    client.get_orders.return_value = []
    client.get_refund_orders.return_value = []
    client.get_comments.return_value = []
    return client


@pytest.fixture
def shopify():
    client = MagicMock()
    client.location_id = 99
    client.get_all_orders.return_value = []
    client.get_orders.return_value = []
    client.get_order.side_effect = lambda order_id: {"id": order_id, "tags": "", "note": None, "fulfillments": []}
    return client


@pytest.fixture
def quiet_sync():
    """Refund and comment steps that report nothing."""
    refunds = MagicMock()
    refunds.run.return_value = SyncReport(name="refunds")
    comments = MagicMock()
    comments.run.return_value = SyncReport(name="comments")
    return refunds, comments


def make_order(number: int, **overrides) -> dict:
    order = {
        "id": 5000 + number,
        "name": f"#{number}",
        "order_number": number,
        "created_at": "2026-10-16T10:00:00+02:00",
        "currency": "EUR",
        "total_price": "29.90",
        "tags": "",
        "contact_email": f"customer{number}@example.com",
        "customer": {"first_name": "Jan", "last_name": "Kowalski", "email": f"customer{number}@example.com"},
        "shipping_address": {
            "first_name": "Jan",
            "last_name": "Kowalski",
            "address1": "Main Street 1",
            "address2": "",
            "city": "Warsaw",
            "zip": "00-001",
            "province": "Mazowieckie",
            "country": "Poland",
            "country_code": "PL",
            "phone": "+48123456789",
        },
        "shipping_lines": [{"id": 1, "price": "4.90"}],
        "line_items": [{
            "id": 9000 + number,
            "product_id": 700,
            "sku": "PB-WHEY-1KG",
            "name": "Whey Protein 1kg",
            "vendor": "Powerbody",
            "quantity": 1,
            "price": "25.00",
            "grams": 1000,
            "tax_lines": [{"rate": 0.23}],
        }],
    }
    order.update(overrides)
    return order
