# ============================================================================
#  refund_sync.py — PowerBody Refunds into Shopify
#  Version: 1.0.2
#  CHANGES: Refund identity derived from the full PowerBody record
# ============================================================================
import hashlib
import json
import logging
from datetime import date
from typing import Dict, List, Optional
from exceptions import PowerBodyError, ShopifyError
from mapping_store import MappingStore
from models import MappingKind, SyncReport, SyncType
from powerbody_client import PowerBodyClient
from shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

REQUIRED_REFUND_FIELDS = ("parent_id", "items", "refund_grand_total")


def refund_identity(refund: Dict) -> str:
    """Stable id for a PowerBody refund: parent order id plus a digest of the record."""
    digest = hashlib.md5(json.dumps(refund, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return f"{refund['parent_id']}_{digest}"


def build_refund_payload(refund: Dict, order: Dict) -> Dict:
    """Matches refunded PowerBody items to Shopify line items by SKU."""
    line_items = []
    for item in refund.get("items") or []:
        sku = item.get("sku")
        try:
            qty = int(float(item.get("qty_refunded") or 0))
        except (TypeError, ValueError):
            qty = 0
        if not sku or qty <= 0:
            continue
        for line in order.get("line_items") or []:
            if line.get("sku") == sku:
                line_items.append({
                    "line_item_id": line["id"],
                    "quantity": qty,
                    "restock_type": "return",
                })
                break

    payload = {
        "notify": True,
        "refund_line_items": line_items,
        "note": f"Refund from PowerBody. Original order ID: {refund['parent_id']}",
    }

    shipping_amount = float(refund.get("refund_shipping") or 0)
    if refund.get("is_refund_shipping") and shipping_amount > 0 and order.get("shipping_lines"):
        # Only the first shipping line is refunded
        payload["shipping"] = {"amount": f"{shipping_amount:.2f}"}
    return payload


class RefundSync:
    def __init__(self, powerbody: PowerBodyClient, shopify: ShopifyClient, store: MappingStore):
        self.powerbody = powerbody
        self.shopify = shopify
        self.store = store

    def _fetch_refunds(self) -> Optional[List[Dict]]:
        since = self.store.get_watermark(SyncType.REFUND)
        filter_ = {"from": since.strftime("%Y-%m-%d"), "to": date.today().strftime("%Y-%m-%d")}
        try:
            refunds = self.powerbody.get_refund_orders(filter_)
        except PowerBodyError as e:
            logger.error(f"Failed to fetch refund orders from PowerBody: {e}")
            return None
        logger.info(f"Fetched {len(refunds)} refund orders from PowerBody")
        return refunds

    def run(self) -> SyncReport:
        logger.info("Starting return/refund sync")
        report = SyncReport(name="refunds")
        refunds = self._fetch_refunds()
        if refunds is None:
            report.add_error("Could not fetch refund orders from PowerBody")
            return report

        for refund in refunds:
            self.sync_refund(refund, report)

        # A failed fetch keeps the old watermark so the window is polled again
        self.store.set_watermark(SyncType.REFUND)
        logger.info(f"Return/refund sync completed: {report.summary()}")
        return report

    def sync_refund(self, refund: Dict, report: SyncReport) -> None:
        if any(field not in refund for field in REQUIRED_REFUND_FIELDS):
            logger.warning("Invalid refund data structure, skipping")
            report.skipped += 1
            return

        pb_order_id = refund["parent_id"]
        mapping = self.store.lookup_by_local(MappingKind.ORDER, pb_order_id)
        if mapping is None:
            logger.debug(f"No matching Shopify order for PowerBody order ID: {pb_order_id}")
            report.skipped += 1
            return

        refund_id = refund_identity(refund)
        if self.store.lookup_by_local(MappingKind.REFUND, refund_id):
            logger.debug(f"Refund already processed in Shopify, skipping: {refund_id}")
            report.skipped += 1
            return

        shopify_order_id = int(mapping.remote_id)
        try:
            order = self.shopify.get_order(shopify_order_id)
            if not order:
                logger.warning(f"Could not find Shopify order: {shopify_order_id}")
                report.skipped += 1
                return

            payload = build_refund_payload(refund, order)
            if not payload["refund_line_items"]:
                logger.warning(f"No matching line items found for refund on Shopify order {shopify_order_id}")
                report.skipped += 1
                return

            created = self.shopify.create_refund(shopify_order_id, payload)
        except ShopifyError as e:
            report.add_error(f"Error creating refund in Shopify for order {shopify_order_id}: {e}")
            logger.error(report.errors[-1])
            return

        if created and created.get("id"):
            self.store.upsert_mapping(MappingKind.REFUND, refund_id, created["id"])
            report.succeeded += 1
            logger.info(f"Successfully created refund {created['id']} in Shopify for order {shopify_order_id} "
                        f"(PowerBody order {pb_order_id})")
        else:
            report.add_error(f"Failed to create refund in Shopify for order {shopify_order_id}")
            logger.error(report.errors[-1])
# ============================================================================
# End of refund_sync.py — Version: 1.0.2
# ============================================================================
