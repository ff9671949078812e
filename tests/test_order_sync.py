"""Tests for order sync orchestration.

Tests cover:
    - Per-order failure isolation and dead-lettering
    - PowerBody outcomes (SUCCESS, ALREADY_EXISTS, FAIL)
    - Candidate selection and the pre-fetched orders file
    - Line price recalculation
    - Status and tracking updates from PowerBody
    - Dead-letter replay
"""
import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from exceptions import PowerBodyError, ShopifyError
from models import ApiOutcome, MappingKind, PowerBodyResult, SyncType
from order_sync import (
    OrderOutcome,
    OrderSyncOrchestrator,
    map_to_powerbody_order,
    recalculate_line_prices,
    retry_dead_letters,
    validate_powerbody_order,
)
from shopify_client import ORDER_TAG

from conftest import make_order


def result(outcome: ApiOutcome) -> PowerBodyResult:
    return PowerBodyResult(outcome=outcome, response={"api_response": outcome.value})


@pytest.fixture
def orchestrator(powerbody, shopify, store, dead_letters, quiet_sync):
    refunds, comments = quiet_sync
    return OrderSyncOrchestrator(powerbody, shopify, store, dead_letters,
                                 refund_sync=refunds, comment_sync=comments)


class TestRun:
    """One bad order never stops the batch."""

    def test_failing_order_is_dead_lettered_and_others_proceed(self, orchestrator, powerbody, shopify,
                                                               store, dead_letters):
        shopify.get_all_orders.return_value = [make_order(n) for n in range(1, 6)]

        def create(pb_order):
            if pb_order["id"] == "shopify_3":
                raise PowerBodyError("PowerBody API call dropshipping.createOrder failed after 3 attempts")
            return result(ApiOutcome.SUCCESS)

        powerbody.create_order.side_effect = create
        report = orchestrator.run()

        assert store.count_mappings(MappingKind.ORDER) == 4
        assert store.lookup_by_remote(MappingKind.ORDER, 5003) is None
        pending = dead_letters.list_pending()
        assert len(pending) == 1
        assert pending[0].entity_id == "5003"
        assert pending[0].payload["order_number"] == 3
        assert pending[0].record_id.startswith("dead_letter_order_exception")
        assert report.succeeded == 4
        assert report.dead_lettered == 1
        assert report.exit_code == 1

    def test_clean_run_exits_zero(self, orchestrator, shopify):
        shopify.get_all_orders.return_value = [make_order(1)]
        report = orchestrator.run()
        assert report.succeeded == 1
        assert report.exit_code == 0

    def test_submitted_order_is_tagged_and_parked(self, orchestrator, shopify):
        shopify.get_all_orders.return_value = [make_order(1)]
        orchestrator.run()

        shopify.add_order_tag.assert_called_once()
        assert shopify.add_order_tag.call_args.args[1] == ORDER_TAG
        order_id, data = shopify.create_fulfillment.call_args.args
        assert order_id == 5001
        assert data["status"] == "open"
        assert data["location_id"] == 99
        assert data["tracking_info"]["number"] == "Awaiting processing"

    def test_watermark_moves_to_run_start(self, orchestrator, store):
        before = store.get_watermark(SyncType.ORDER)
        orchestrator.run()
        assert store.get_watermark(SyncType.ORDER) > before

    def test_failed_fetch_keeps_watermark(self, orchestrator, shopify, store):
        before = store.get_watermark(SyncType.ORDER)
        shopify.get_all_orders.side_effect = ShopifyError("down", status_code=503)
        report = orchestrator.run()
        assert store.get_watermark(SyncType.ORDER) == before
        assert report.exit_code == 1

    def test_order_with_many_missing_fields_does_not_stop_the_batch(self, orchestrator, shopify, store,
                                                                    dead_letters):
        shopify.get_all_orders.return_value = [
            make_order(1),
            make_order(2, shipping_address={}, customer={}),
            make_order(3),
        ]
        report = orchestrator.run()

        assert store.count_mappings(MappingKind.ORDER) == 2
        [record] = dead_letters.list_pending()
        assert record.record_id.startswith("dead_letter_order_validation_failed_5002_")
        assert len(record.record_id) < 80
        assert "Postal code" in record.failure_reason and "Phone" in record.failure_reason
        assert report.dead_lettered == 1

    def test_unexpected_mapping_error_is_dead_lettered(self, orchestrator, shopify, store, dead_letters):
        broken = make_order(2)
        broken["line_items"][0]["grams"] = "1000"
        shopify.get_all_orders.return_value = [make_order(1), broken, make_order(3)]

        report = orchestrator.run()

        assert store.count_mappings(MappingKind.ORDER) == 2
        [record] = dead_letters.list_pending()
        assert record.entity_id == "5002"
        assert record.failure_reason.startswith("exception: TypeError")
        assert report.dead_lettered == 1

    def test_dead_letter_write_failure_is_counted_and_batch_continues(self, orchestrator, powerbody, shopify,
                                                                      store, dead_letters):
        shopify.get_all_orders.return_value = [make_order(1), make_order(2), make_order(3)]
        powerbody.create_order.side_effect = lambda pb_order: (
            result(ApiOutcome.FAIL) if pb_order["id"] == "shopify_2" else result(ApiOutcome.SUCCESS))

        with patch.object(dead_letters, "record", side_effect=OSError("disk full")):
            report = orchestrator.run()

        assert store.count_mappings(MappingKind.ORDER) == 2
        assert report.failed == 1
        assert report.succeeded == 2
        assert report.exit_code == 1

    def test_refund_and_comment_steps_can_be_skipped(self, orchestrator, quiet_sync):
        refunds, comments = quiet_sync
        orchestrator.run(include_refunds=False, include_comments=False)
        refunds.run.assert_not_called()
        comments.run.assert_not_called()


class TestOutcomes:
    """PowerBody answers map to mappings or dead letters."""

    def test_already_exists_records_mapping_without_dead_letter(self, orchestrator, powerbody, store, dead_letters):
        powerbody.create_order.return_value = result(ApiOutcome.ALREADY_EXISTS)
        outcome = orchestrator.process_order(make_order(7))

        assert outcome == OrderOutcome.ALREADY_EXISTS
        assert store.lookup_by_local(MappingKind.ORDER, "shopify_7").remote_id == "5007"
        assert dead_letters.list_pending() == []
        powerbody.get_orders.assert_called_once_with({"ids": "shopify_7"})

    def test_fail_is_dead_lettered(self, orchestrator, powerbody, store, dead_letters):
        powerbody.create_order.return_value = result(ApiOutcome.FAIL)
        assert orchestrator.process_order(make_order(8)) == OrderOutcome.DEAD_LETTERED
        assert store.count_mappings(MappingKind.ORDER) == 0
        assert dead_letters.list_pending()[0].record_id.startswith("dead_letter_order_create_failed_5008")

    def test_invalid_order_is_never_submitted(self, orchestrator, powerbody, dead_letters):
        order = make_order(9, shipping_address={})
        assert orchestrator.process_order(order) == OrderOutcome.DEAD_LETTERED
        powerbody.create_order.assert_not_called()
        record = dead_letters.list_pending()[0]
        assert record.record_id.startswith("dead_letter_order_validation_failed")
        assert "Postal code" in record.failure_reason

    def test_unexpected_submission_error_is_dead_lettered(self, orchestrator, powerbody, dead_letters):
        powerbody.create_order.side_effect = TypeError("unexpected")
        assert orchestrator.process_order(make_order(4)) == OrderOutcome.DEAD_LETTERED
        record = dead_letters.list_pending()[0]
        assert record.record_id.startswith("dead_letter_order_exception_5004_")
        assert record.failure_reason == "exception: TypeError: unexpected"

    def test_tagging_failure_does_not_fail_the_order(self, orchestrator, shopify, store):
        shopify.add_order_tag.side_effect = ShopifyError("boom", status_code=500)
        assert orchestrator.process_order(make_order(1)) == OrderOutcome.SUBMITTED
        assert store.count_mappings(MappingKind.ORDER) == 1


class TestCandidates:
    def test_filters_tagged_mapped_and_foreign_orders(self, orchestrator, shopify, store):
        tagged = make_order(1, tags=f"vip, {ORDER_TAG}")
        mapped = make_order(2)
        store.upsert_mapping(MappingKind.ORDER, "shopify_2", mapped["id"])
        foreign = make_order(3)
        foreign["line_items"][0].update(vendor="Other", sku="OTHER-1")
        fresh = make_order(4)
        shopify.get_all_orders.return_value = [tagged, mapped, foreign, fresh]

        assert [o["id"] for o in orchestrator.fetch_candidate_orders()] == [fresh["id"]]

    def test_known_sku_counts_as_powerbody_item(self, orchestrator, shopify, store):
        order = make_order(5)
        order["line_items"][0]["vendor"] = "Someone"
        store.upsert_mapping(MappingKind.PRODUCT, "pb-1", 700, sku="PB-WHEY-1KG")
        shopify.get_all_orders.return_value = [order]
        assert len(orchestrator.fetch_candidate_orders()) == 1

    def test_query_uses_watermark(self, orchestrator, shopify, store):
        orchestrator.fetch_candidate_orders()
        params = shopify.get_all_orders.call_args.args[0]
        assert params["created_at_min"] == store.get_watermark(SyncType.ORDER).isoformat()
        assert params["fulfillment_status"] == "unfulfilled"

    def test_prefetched_file_is_used(self, orchestrator, shopify, tmp_path):
        path = tmp_path / "orders.json"
        path.write_text(json.dumps([make_order(1), make_order(2)]))
        orchestrator.orders_file = str(path)
        assert len(orchestrator.fetch_candidate_orders()) == 2
        shopify.get_all_orders.assert_not_called()

    def test_unreadable_prefetched_file_falls_back(self, orchestrator, shopify, tmp_path):
        path = tmp_path / "orders.json"
        path.write_text("{broken")
        orchestrator.orders_file = str(path)
        shopify.get_all_orders.return_value = [make_order(1)]
        assert len(orchestrator.fetch_candidate_orders()) == 1
        shopify.get_all_orders.assert_called_once()


class TestMapping:
    def test_payload_shape(self):
        pb = map_to_powerbody_order(make_order(12), set())
        assert pb["id"] == "shopify_12"
        assert pb["shipping_price"] == pytest.approx(4.9)
        assert pb["weight"] == pytest.approx(1.0)
        assert pb["address"]["postcode"] == "00-001"
        assert pb["address"]["email"] == "customer12@example.com"
        assert pb["products"][0]["tax"] == pytest.approx(23.0)
        assert validate_powerbody_order(pb) == []

    def test_foreign_items_are_not_sent(self):
        order = make_order(1)
        order["line_items"].append({"sku": "GIFT", "name": "Gift card", "vendor": "Shop", "quantity": 1,
                                    "price": "10.00"})
        assert [p["sku"] for p in map_to_powerbody_order(order, set())["products"]] == ["PB-WHEY-1KG"]

    def test_email_falls_back_to_placeholder(self):
        order = make_order(1, contact_email=None, customer={})
        assert map_to_powerbody_order(order, set())["address"]["email"] == "no-email@example.com"


class TestRecalculation:
    """Zero PowerBody prices are rebuilt from the order total."""

    def _zero_priced(self, total: str) -> dict:
        order = make_order(1, total_price=total)
        order["line_items"] = [
            {"id": i, "sku": f"PB-{i}", "name": f"Item {i}", "vendor": "Powerbody", "quantity": 1, "price": "0.00"}
            for i in range(3)
        ]
        return order

    def test_remainder_goes_to_last_item(self):
        fixed = recalculate_line_prices(self._zero_priced("14.90"), set())
        prices = [item["price"] for item in fixed["line_items"]]
        assert prices == ["3.33", "3.33", "3.34"]
        assert sum(Decimal(p) for p in prices) == Decimal("10.00")

    def test_input_is_not_mutated(self):
        order = self._zero_priced("14.90")
        recalculate_line_prices(order, set())
        assert order["line_items"][0]["price"] == "0.00"

    def test_partially_zero_order_is_unchanged(self):
        order = self._zero_priced("14.90")
        order["line_items"][1]["price"] = "5.00"
        assert recalculate_line_prices(order, set()) is order

    def test_partially_zero_order_fails_validation(self, orchestrator, powerbody):
        order = self._zero_priced("14.90")
        order["line_items"][1]["price"] = "5.00"
        assert orchestrator.process_order(order) == OrderOutcome.DEAD_LETTERED
        powerbody.create_order.assert_not_called()


class TestStatusUpdates:
    """PowerBody status and tracking flow back into Shopify."""

    def test_tracking_creates_fulfillment_and_note(self, orchestrator, shopify):
        shopify.add_note_to_order.return_value = {"id": 5001, "note": "Tracking number updated: TRK1"}
        orchestrator.apply_powerbody_update(5001, {"order_id": "shopify_1", "tracking_number": "TRK1",
                                                   "status": "complete"})

        order_id, data = shopify.create_fulfillment.call_args.args
        assert order_id == 5001
        assert data["tracking_info"]["url"] == "https://track-trace.com/TRK1"
        notes = [c.args[1] for c in shopify.add_note_to_order.call_args_list]
        assert notes == ["Tracking number updated: TRK1", "PowerBody order status updated to: complete"]

    def test_known_tracking_number_is_not_resent(self, orchestrator, shopify):
        order = {"id": 5001, "note": None, "fulfillments": [{"id": 1, "tracking_number": "TRK1"}]}
        assert orchestrator.update_tracking(order, "TRK1") is order
        shopify.create_fulfillment.assert_not_called()
        shopify.update_fulfillment.assert_not_called()

    def test_status_note_not_duplicated(self, orchestrator, shopify):
        order = {"id": 5001, "note": "PowerBody order status updated to: processing", "fulfillments": []}
        orchestrator.update_status(order, "processing")
        shopify.add_note_to_order.assert_not_called()

    def test_cancelled_updates_fulfillments(self, orchestrator, shopify):
        order = {"id": 5001, "note": "", "fulfillments": [{"id": 11, "status": "open"}]}
        orchestrator.update_status(order, "cancelled")
        shopify.update_fulfillment.assert_called_once_with(5001, 11, {"status": "cancelled"})

    def test_unmapped_order_is_found_by_name(self, orchestrator, powerbody, shopify, store):
        powerbody.get_orders.return_value = [{"order_id": "shopify_42", "status": "processing"}]
        shopify.get_orders.return_value = [{"id": 5042}]

        report = orchestrator.update_existing_orders()

        shopify.get_orders.assert_called_once_with({"name": "#42", "status": "any"})
        assert store.lookup_by_local(MappingKind.ORDER, "shopify_42").remote_id == "5042"
        shopify.get_order.assert_called_with(5042)
        assert report.exit_code == 0

    def test_fetch_failure_is_reported(self, orchestrator, powerbody):
        powerbody.get_orders.side_effect = PowerBodyError("down")
        assert orchestrator.update_existing_orders().failed == 1


class TestDeadLetterReplay:
    def test_successful_replay_is_processed(self, orchestrator, dead_letters, store):
        record = dead_letters.record(5001, make_order(1), "exception", "timeout")
        report = retry_dead_letters(dead_letters, orchestrator)

        assert report.succeeded == 1
        assert store.lookup_by_remote(MappingKind.ORDER, 5001) is not None
        names = [p.name for p in dead_letters.directory.iterdir()]
        assert any(n.startswith(f"{record.record_id}.json.processed_") for n in names)

    def test_failed_replay_is_not_requeued(self, orchestrator, powerbody, dead_letters):
        dead_letters.record(5001, make_order(1), "create_failed")
        powerbody.create_order.return_value = result(ApiOutcome.FAIL)

        report = retry_dead_letters(dead_letters, orchestrator)

        assert report.failed == 1
        assert dead_letters.list_pending() == []
        names = [p.name for p in dead_letters.directory.iterdir()]
        assert len(names) == 1 and ".json.failed_" in names[0]

    def test_only_newest_by_default(self, orchestrator, dead_letters):
        dead_letters.record(5001, make_order(1), "exception")
        dead_letters.record(5002, make_order(2), "exception")
        assert retry_dead_letters(dead_letters, orchestrator).succeeded == 1
        assert len(dead_letters.list_pending()) == 1

    def test_all_pending(self, orchestrator, dead_letters):
        dead_letters.record(5001, make_order(1), "exception")
        dead_letters.record(5002, make_order(2), "exception")
        assert retry_dead_letters(dead_letters, orchestrator, all_pending=True).succeeded == 2
        assert dead_letters.list_pending() == []

    def test_crashing_replay_does_not_strand_the_claim(self, dead_letters):
        record = dead_letters.record(5001, make_order(1), "exception", "boom")
        crashing = MagicMock()
        crashing.process_specific_order.side_effect = RuntimeError("unexpected")

        report = retry_dead_letters(dead_letters, crashing)

        assert report.failed == 1
        names = [p.name for p in dead_letters.directory.iterdir()]
        assert not any(n.endswith(".claimed") for n in names)
        assert any(n.startswith(f"{record.record_id}.json.failed_") for n in names)

    def test_replay_of_order_that_still_raises_is_marked_failed(self, orchestrator, powerbody, dead_letters):
        dead_letters.record(5001, make_order(1), "exception", "boom")
        powerbody.create_order.side_effect = TypeError("unexpected")

        report = retry_dead_letters(dead_letters, orchestrator)

        assert report.failed == 1
        assert dead_letters.list_pending() == []
        names = [p.name for p in dead_letters.directory.iterdir()]
        assert len(names) == 1 and ".json.failed_" in names[0]

    def test_already_mapped_order_counts_as_done(self, orchestrator, powerbody, dead_letters, store):
        store.upsert_mapping(MappingKind.ORDER, "shopify_1", 5001)
        dead_letters.record(5001, make_order(1), "exception")
        assert retry_dead_letters(dead_letters, orchestrator).succeeded == 1
        powerbody.create_order.assert_not_called()
