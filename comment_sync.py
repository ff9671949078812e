# ============================================================================
#  comment_sync.py — Order Comment Sync (both directions)
#  Version: 1.0.5
#  CHANGES: PowerBody notes echoed back into Shopify are no longer resent
# ============================================================================
import hashlib
import logging
from datetime import datetime
from typing import Dict, List
from exceptions import PowerBodyError, ShopifyError, ValidationFailed
from mapping_store import MappingStore
from models import CommentDirection, MappingKind, SyncReport, SyncType
from powerbody_client import PowerBodyClient
from shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

POWERBODY_NOTE_PREFIX = "[PowerBody: "
SHOPIFY_AUTHOR = "Shopify System"


def _md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def powerbody_comment_id(comment: Dict) -> str:
    return "powerbody_" + _md5(f"{comment.get('author_name', '')}_{comment.get('comment', '')}_"
                               f"{comment.get('created_at', '')}")


def shopify_note_id(order_id, note: str) -> str:
    return f"shopify_{order_id}_{_md5(note)}"


def merchant_note(note: str) -> str:
    """Drops paragraphs that were copied in from PowerBody."""
    paragraphs = [p for p in (note or "").split("\n\n") if p.strip()]
    return "\n\n".join(p for p in paragraphs if not p.strip().startswith(POWERBODY_NOTE_PREFIX)).strip()


class CommentSync:
    def __init__(self, powerbody: PowerBodyClient, shopify: ShopifyClient, store: MappingStore):
        self.powerbody = powerbody
        self.shopify = shopify
        self.store = store

    def run(self) -> SyncReport:
        logger.info("Starting comment sync")
        report = SyncReport(name="comments")
        self.to_shopify(report)
        self.to_powerbody(report)
        self.store.set_watermark(SyncType.COMMENT)
        logger.info(f"Comment sync completed: {report.summary()}")
        return report

    def _fetch_powerbody_comments(self) -> List[Dict]:
        try:
            comments = self.powerbody.get_comments()
        except PowerBodyError as e:
            logger.error(f"Failed to fetch comments from PowerBody: {e}")
            return []
        logger.info(f"Fetched {len(comments)} comment entries from PowerBody")
        return comments

    def to_shopify(self, report: SyncReport) -> None:
        entries = self._fetch_powerbody_comments()
        if not entries:
            logger.info("No PowerBody comments to sync to Shopify")
            return

        for entry in entries:
            if "id" not in entry or "comments" not in entry:
                logger.warning("Invalid comment data structure, skipping")
                report.skipped += 1
                continue

            mapping = self.store.lookup_by_local(MappingKind.ORDER, entry["id"])
            if mapping is None:
                logger.debug(f"No matching Shopify order for PowerBody order ID: {entry['id']}")
                continue

            side = (entry.get("comments") or {}).get("side_powerbody") or []
            for comment in side:
                comment_id = powerbody_comment_id(comment)
                if self.store.is_comment_synced(CommentDirection.POWERBODY_TO_SHOPIFY, comment_id):
                    logger.debug(f"Comment already synced to Shopify, skipping: {comment_id}")
                    continue

                text = f"{POWERBODY_NOTE_PREFIX}{comment.get('author_name', 'unknown')}] {comment.get('comment', '')}"
                try:
                    order = self.shopify.get_order(int(mapping.remote_id)) or {}
                    updated = self.shopify.add_note_to_order(int(mapping.remote_id), text, order.get("note"))
                except ShopifyError as e:
                    report.add_error(f"Error adding comment to Shopify order {mapping.remote_id}: {e}")
                    logger.error(report.errors[-1])
                    continue

                if updated:
                    self.store.mark_comment_synced(CommentDirection.POWERBODY_TO_SHOPIFY, comment_id)
                    report.succeeded += 1
                    logger.info(f"Added PowerBody comment to Shopify order {mapping.remote_id} "
                                f"(PowerBody order {entry['id']})")
                else:
                    report.add_error(f"Failed to add comment to Shopify order {mapping.remote_id}")
                    logger.warning(report.errors[-1])

    def to_powerbody(self, report: SyncReport) -> None:
        since = self.store.get_watermark(SyncType.COMMENT)
        params = {
            "status": "any",
            "updated_at_min": since.isoformat(),
            "limit": 250,
            "fields": "id,name,order_number,note,updated_at",
        }
        try:
            orders = self.shopify.get_all_orders(params)
        except ShopifyError as e:
            report.add_error(f"Failed to fetch updated orders from Shopify: {e}")
            logger.error(report.errors[-1])
            return

        for order in orders:
            note = merchant_note(order.get("note") or "")
            if not note:
                continue

            mapping = self.store.lookup_by_remote(MappingKind.ORDER, order["id"])
            if mapping is None:
                logger.debug(f"No matching PowerBody order for Shopify order ID: {order['id']}")
                continue

            note_id = shopify_note_id(order["id"], note)
            if self.store.is_comment_synced(CommentDirection.SHOPIFY_TO_POWERBODY, note_id):
                logger.debug(f"Note already synced to PowerBody, skipping: {note_id}")
                continue

            payload = {
                "id": mapping.local_id,
                "comments": [{
                    "author_name": SHOPIFY_AUTHOR,
                    "comment": note,
                    "created_at": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
                }],
            }
            try:
                result = self.powerbody.insert_comment(payload)
            except (PowerBodyError, ValidationFailed) as e:
                report.add_error(f"Error adding note to PowerBody order {mapping.local_id}: {e}")
                logger.error(report.errors[-1])
                continue

            if result.ok:
                self.store.mark_comment_synced(CommentDirection.SHOPIFY_TO_POWERBODY, note_id)
                report.succeeded += 1
                logger.info(f"Added Shopify note to PowerBody order {mapping.local_id} (Shopify order {order['id']})")
            else:
                report.add_error(f"Failed to add note to PowerBody order {mapping.local_id}: {result.outcome.value}")
                logger.warning(report.errors[-1])
# ============================================================================
# End of comment_sync.py — Version: 1.0.5
# ============================================================================
