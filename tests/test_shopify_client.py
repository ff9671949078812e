"""Tests for the Shopify REST/GraphQL adapter.

Tests cover:
    - Retry budget, backoff growth and non-retryable 4xx
    - Link header pagination
    - Continue-on-error bulk operations
    - GraphQL THROTTLED handling
"""
from unittest.mock import MagicMock, patch

import pytest
import requests

from exceptions import ShopifyError
from shopify_client import ShopifyClient, clean_product_data, page_info_from, parse_link_header


def make_response(status=200, json_data=None, headers=None):
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.json.return_value = json_data if json_data is not None else {}
    response.content = b"{}"
    response.text = ""
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session):
    return ShopifyClient("test.myshopify.com", " token ", session=session, throttle=MagicMock())


class TestRetries:
    """Transient failures are retried, others surface immediately."""

    def test_exhausts_three_attempts_with_growing_delay(self, client, session):
        session.request.return_value = make_response(503)
        with patch("shopify_client.time.sleep") as sleep, \
                patch("shopify_client.random.uniform", return_value=0.5):
            with pytest.raises(ShopifyError) as exc:
                client.request("GET", "orders.json")

        assert session.request.call_count == 3
        assert exc.value.status_code == 503
        delays = [call.args[0] for call in sleep.call_args_list]
        assert delays == [2.5, 4.5]
        assert delays == sorted(delays)

    def test_client_error_is_not_retried(self, client, session):
        session.request.return_value = make_response(404)
        with patch("shopify_client.time.sleep") as sleep:
            with pytest.raises(ShopifyError) as exc:
                client.request("GET", "orders/1.json")
        assert session.request.call_count == 1
        assert exc.value.status_code == 404
        assert not exc.value.retryable
        sleep.assert_not_called()

    def test_rate_limit_honours_retry_after(self, client, session):
        session.request.side_effect = [
            make_response(429, headers={"Retry-After": "10"}),
            make_response(200, {"orders": []}),
        ]
        with patch("shopify_client.time.sleep") as sleep, \
                patch("shopify_client.random.uniform", return_value=0.0):
            assert client.request("GET", "orders.json") == {"orders": []}
        sleep.assert_called_once_with(10.0)

    def test_delay_never_shrinks_after_long_retry_after(self, client, session):
        session.request.side_effect = [
            make_response(429, headers={"Retry-After": "10"}),
            make_response(503),
            make_response(200, {"orders": []}),
        ]
        with patch("shopify_client.time.sleep") as sleep, \
                patch("shopify_client.random.uniform", return_value=0.5):
            assert client.request("GET", "orders.json") == {"orders": []}
        delays = [call.args[0] for call in sleep.call_args_list]
        assert delays == [10.0, 10.0]

    def test_connection_error_then_success(self, client, session):
        session.request.side_effect = [requests.ConnectionError("reset"), make_response(200, {"ok": True})]
        with patch("shopify_client.time.sleep"):
            assert client.request("GET", "shop.json") == {"ok": True}
        assert session.request.call_count == 2

    def test_token_is_trimmed(self, client):
        assert client.headers["X-Shopify-Access-Token"] == "token"


class TestPagination:
    """Link header cursors."""

    def test_parse_link_header(self):
        header = ('<https://s/admin/api/2024-10/orders.json?limit=2&page_info=prev1>; rel="previous", '
                  '<https://s/admin/api/2024-10/orders.json?limit=2&page_info=next1>; rel="next"')
        links = parse_link_header(header)
        assert page_info_from(links["next"]) == "next1"
        assert page_info_from(links["previous"]) == "prev1"

    def test_iter_pages_follows_next_cursor(self, client, session):
        first = make_response(200, {"orders": [{"id": 1}, {"id": 2}]}, headers={
            "Link": '<https://test.myshopify.com/admin/api/2024-10/orders.json?limit=2&page_info=abc>; rel="next"'
        })
        second = make_response(200, {"orders": [{"id": 3}]})
        session.request.side_effect = [first, second]

        orders = client.get_all_orders({"limit": 2, "status": "any"})

        assert [o["id"] for o in orders] == [1, 2, 3]
        assert session.request.call_args_list[1].kwargs["params"] == {"limit": 2, "page_info": "abc"}
        assert client.next_page_url is None


class TestBulkOperations:
    """Chunked operations keep going after a failed item."""

    def test_inventory_updates_continue_on_error(self, client):
        updates = [{"inventory_item_id": i, "location_id": 1, "available": 5} for i in range(1, 4)]
        with patch.object(client, "update_inventory_level",
                          side_effect=[{"ok": 1}, ShopifyError("boom", status_code=422), {"ok": 3}]), \
                patch("shopify_client.time.sleep"):
            result = client.bulk_update_inventory(updates, chunk_size=2)
        assert result.success_count == 2
        assert result.failure_count == 1

    def test_invalid_inventory_entry_is_reported(self, client):
        with patch.object(client, "update_inventory_level") as update:
            result = client.bulk_update_inventory([{"inventory_item_id": 1}])
        update.assert_not_called()
        assert result.failure_count == 1

    def test_update_requires_product_id(self, client):
        with patch.object(client, "update_product") as update:
            result = client.bulk_update_products([{"title": "no id"}])
        update.assert_not_called()
        assert result.failure_count == 1

    def test_clean_product_data_drops_unknown_fields(self):
        clean = clean_product_data({
            "id": 1,
            "title": "T",
            "powerbody_id": "X",
            "variants": [{"id": 5, "price": "1.00", "option1": "a"}, {"price": "2.00"}],
        })
        assert clean == {"id": 1, "title": "T", "variants": [{"id": 5, "price": "1.00"}]}


class TestGraphQL:
    """GraphQL throttling and errors."""

    def test_throttled_then_success(self, client, session):
        session.request.side_effect = [
            make_response(200, {"errors": [{"extensions": {"code": "THROTTLED"}}]}),
            make_response(200, {"data": {"shop": {"name": "x"}}}),
        ]
        with patch("shopify_client.time.sleep") as sleep:
            assert client.execute_graphql("{ shop { name } }") == {"shop": {"name": "x"}}
        sleep.assert_called_once_with(5)

    def test_other_errors_raise(self, client, session):
        session.request.return_value = make_response(200, {"errors": [{"message": "bad field"}]})
        with pytest.raises(ShopifyError):
            client.execute_graphql("{ nope }")


class TestOrders:
    """Order helpers."""

    def test_add_order_tag_skips_existing_tag(self, client):
        with patch.object(client, "update_order") as update:
            client.add_order_tag({"id": 1, "tags": "vip, powerbody-dropshipping"})
        update.assert_not_called()

    def test_add_order_tag_appends(self, client):
        with patch.object(client, "update_order") as update:
            client.add_order_tag({"id": 1, "tags": "vip"})
        update.assert_called_once_with(1, {"tags": "vip, powerbody-dropshipping"})

    def test_add_note_appends_to_existing(self, client):
        with patch.object(client, "update_order") as update:
            client.add_note_to_order(1, "second", existing_note="first")
        update.assert_called_once_with(1, {"note": "first\n\nsecond"})
