"""Tests for the PowerBody SOAP adapter.

Tests cover:
    - Session value lifecycle (reuse, expiry, re-login on retry)
    - Retry budget and backoff
    - Response normalization
    - Cache-aware product reads
    - Tagged results for mutating calls
"""
import json
from unittest.mock import MagicMock, patch

import pytest
import requests
from zeep.exceptions import Fault

from exceptions import PowerBodyError, ValidationFailed
from models import ApiOutcome, SoapSession
from powerbody_client import PowerBodyClient, as_record_list, normalize_response
from product_cache import ProductCache


@pytest.fixture
def service():
    svc = MagicMock()
    svc.login.return_value = "token-1"
    svc.call.return_value = '{"ok": true}'
    return svc


@pytest.fixture
def cache(tmp_path):
    return ProductCache(tmp_path / "cache")


@pytest.fixture
def client(service, cache):
    return PowerBodyClient("http://example.invalid/?wsdl", "user", "secret", cache, service=service)


class TestSession:
    """Explicit session value with a ten minute lifetime."""

    def test_session_is_reused_while_fresh(self, client, service):
        with patch("powerbody_client.time.time", return_value=1000.0):
            client.call_with_retry("dropshipping.getComments")
            client.call_with_retry("dropshipping.getComments")
        assert service.login.call_count == 1

    def test_expired_session_is_renewed(self, client, service):
        client.session = SoapSession(token="old", started_at=0.0)
        service.login.return_value = "new"
        with patch("powerbody_client.time.time", return_value=601.0):
            session = client.ensure_fresh()
        assert session.token == "new"
        service.endSession.assert_called_once_with("old")

    def test_fresh_session_is_returned_unchanged(self, client, service):
        client.session = SoapSession(token="current", started_at=0.0)
        with patch("powerbody_client.time.time", return_value=599.0):
            assert client.ensure_fresh().token == "current"
        service.login.assert_not_called()

    def test_session_fault_forces_login(self, client, service):
        service.call.side_effect = [Fault("Session expired"), '{"ok": true}']
        with patch("powerbody_client.time.sleep"):
            assert client.call_with_retry("dropshipping.getComments") == {"ok": True}
        assert service.login.call_count == 2

    def test_close_ends_session(self, client, service):
        client.session = SoapSession(token="t", started_at=0.0)
        client.close()
        service.endSession.assert_called_once_with("t")
        assert client.session is None


class TestRetry:
    """Three attempts, exponential backoff, then PowerBodyError."""

    def test_raises_after_exactly_three_attempts(self, client, service):
        service.call.side_effect = requests.ConnectionError("down")
        with patch("powerbody_client.time.sleep") as sleep:
            with pytest.raises(PowerBodyError):
                client.call_with_retry("dropshipping.getOrders")

        assert service.call.call_count == 3
        delays = [call.args[0] for call in sleep.call_args_list]
        assert delays == [1.0, 2.0]
        # One initial login plus a re-login before each retry
        assert service.login.call_count == 3

    def test_failed_login_counts_against_budget(self, client, service):
        service.login.side_effect = Fault("bad credentials")
        with patch("powerbody_client.time.sleep"):
            with pytest.raises(PowerBodyError):
                client.call_with_retry("dropshipping.getOrders")
        assert service.login.call_count == 3
        service.call.assert_not_called()


class TestNormalization:
    """Responses arrive as JSON strings, zeep objects or plain values."""

    def test_json_string_is_decoded(self):
        assert normalize_response('[{"a": 1}]') == [{"a": 1}]

    def test_plain_string_is_kept(self):
        assert normalize_response("OK") == "OK"

    def test_broken_json_is_kept_as_text(self):
        assert normalize_response("{not json") == "{not json"

    def test_record_list_from_keyed_dict(self):
        assert as_record_list({"1": {"id": 1}, "2": {"id": 2}}) == [{"id": 1}, {"id": 2}]

    def test_record_list_from_garbage(self):
        assert as_record_list("nope") == []


class TestProductReads:
    """Cache hits skip the remote call; only non-empty results are cached."""

    def test_cache_hit_short_circuits(self, client, service, cache):
        cache.put(42, {"product_id": 42, "name": "Cached"})
        assert client.get_product_info(42) == {"product_id": 42, "name": "Cached"}
        service.call.assert_not_called()

    def test_miss_fetches_and_writes_back(self, client, service, cache):
        service.call.return_value = json.dumps({"product_id": 7, "name": "Fresh"})
        assert client.get_product_info(7)["name"] == "Fresh"
        assert cache.get(7) == {"product_id": 7, "name": "Fresh"}

    def test_empty_result_is_not_cached(self, client, service, cache):
        service.call.return_value = ""
        assert client.get_product_info(8) is None
        assert cache.get(8) is None

    def test_product_list_is_cached(self, client, service, cache):
        service.call.return_value = json.dumps([{"product_id": 1}, {"product_id": 2}])
        assert len(client.get_product_list()) == 2
        assert client.get_product_list() == [{"product_id": 1}, {"product_id": 2}]
        assert service.call.call_count == 1

    def test_refresh_overwrites_cache(self, client, service, cache):
        cache.put(5, {"name": "old"})
        service.call.return_value = json.dumps({"name": "new"})
        assert client.refresh_product_cache(5) is True
        assert cache.get(5) == {"name": "new"}


class TestMutations:
    """Domain outcomes are values, never retried."""

    def test_already_exists_is_a_result(self, client, service):
        service.call.return_value = json.dumps({"id": "shopify_1", "api_response": "ALREADY_EXISTS"})
        result = client.create_order({"id": "shopify_1"})
        assert result.outcome == ApiOutcome.ALREADY_EXISTS
        assert result.accepted and not result.ok
        assert service.call.call_count == 1

    def test_missing_status_is_invalid_response(self, client, service):
        service.call.return_value = json.dumps({"id": "shopify_1"})
        assert client.create_order({"id": "shopify_1"}).outcome == ApiOutcome.INVALID_RESPONSE

    def test_unrecognised_status_is_unknown(self, client, service):
        service.call.return_value = json.dumps({"api_response": "MAYBE"})
        assert client.update_order({"id": "x"}).outcome == ApiOutcome.UNKNOWN

    def test_payload_is_sent_as_json(self, client, service):
        service.call.return_value = json.dumps({"api_response": "SUCCESS"})
        client.insert_comment({"id": "shopify_1", "comments": []})
        token, method, params = service.call.call_args.args
        assert method == "dropshipping.insertComment"
        assert json.loads(params)["id"] == "shopify_1"

    def test_update_requires_id(self, client):
        with pytest.raises(ValidationFailed):
            client.update_order({"status": "pending"})

    def test_insert_comment_requires_list(self, client):
        with pytest.raises(ValidationFailed):
            client.insert_comment({"id": "shopify_1", "comments": "text"})
