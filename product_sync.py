# ============================================================================
#  product_sync.py — Product Catalogue Sync Orchestration
#  Version: 1.4.1
#  CHANGES: Archiving falls back to the stored SKU mapping when the Shopify
#           variant SKU was changed
# ============================================================================
import json
import logging
import re
import time
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
from pydantic import ValidationError
from config import SyncConfig
from exceptions import PowerBodyError, ShopifyError
from mapping_store import MappingStore
from models import BulkResult, MappingKind, PowerBodyProduct, SyncReport, SyncType
from powerbody_client import PowerBodyClient
from shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

METAFIELD_NAMESPACE = "powerbody"
DEFAULT_VENDOR = "Powerbody"
BATCH_PAUSE_SECONDS = 1.0
CENT = Decimal("0.01")


def apply_markup(price, percent) -> Decimal:
    """Price plus ``percent`` %, rounded half-up to cents (10.00 at 22 -> 12.20)."""
    base = Decimal(str(price or 0))
    factor = Decimal("1") + Decimal(str(percent or 0)) / Decimal("100")
    return (base * factor).quantize(CENT, rounding=ROUND_HALF_UP)


def clean_title(title: str, patterns: Iterable[str]) -> str:
    cleaned = title or ""
    for pattern in patterns:
        cleaned = re.sub(pattern, " ", cleaned, flags=re.IGNORECASE)
    cleaned = " ".join(cleaned.split())
    return cleaned or (title or "").strip()


def build_metafields(product: PowerBodyProduct, markup_percent) -> List[Dict]:
    metafields = []
    if product.price_per_serving is not None:
        metafields.append({
            "namespace": METAFIELD_NAMESPACE,
            "key": "price_per_serving",
            "type": "number_decimal",
            "value": str(apply_markup(product.price_per_serving, markup_percent)),
        })
    if product.ean:
        metafields.append({
            "namespace": METAFIELD_NAMESPACE,
            "key": "ean",
            "type": "single_line_text_field",
            "value": str(product.ean),
        })
    if product.servings:
        metafields.append({
            "namespace": METAFIELD_NAMESPACE,
            "key": "servings",
            "type": "number_integer",
            "value": str(product.servings),
        })
    metafields.append({
        "namespace": METAFIELD_NAMESPACE,
        "key": "powerbody_id",
        "type": "single_line_text_field",
        "value": product.product_id,
    })
    return metafields


def resolve_collection(category: Optional[str], collections: Dict[str, int]) -> Optional[int]:
    if not category or not collections:
        return None
    if category in collections:
        return collections[category]
    lowered = {name.lower(): cid for name, cid in collections.items()}
    return lowered.get(category.strip().lower())


def index_by_sku(products: List[Dict]) -> Dict[str, Dict]:
    """sku -> {"product": ..., "variant": ...} for every Shopify variant carrying a SKU."""
    index = {}
    for product in products:
        for variant in product.get("variants") or []:
            if variant.get("sku"):
                index[variant["sku"]] = {"product": product, "variant": variant}
    return index


class ProductSyncOrchestrator:
    def __init__(self, powerbody: PowerBodyClient, shopify: ShopifyClient, store: MappingStore, config: SyncConfig):
        self.powerbody = powerbody
        self.shopify = shopify
        self.store = store
        self.config = config

    # ------------------------------------------------------------------
    # Transform
    # ------------------------------------------------------------------

    def status_for(self, product: PowerBodyProduct) -> str:
        if product.qty <= 0:
            return self.config.zero_inventory_status
        return "active"

    def transform(self, product: PowerBodyProduct) -> Dict:
        """Maps a PowerBody catalogue row to a Shopify product payload."""
        markup = self.config.price_markup_percent
        variant = {
            "sku": product.sku,
            "price": str(apply_markup(product.base_price, markup)),
            "inventory_management": "shopify",
        }
        if product.ean:
            variant["barcode"] = str(product.ean)
        if product.weight is not None:
            variant["weight"] = float(product.weight)
            variant["weight_unit"] = "kg"

        payload = {
            "title": clean_title(product.name, self.config.title_cleanup_patterns),
            "vendor": product.manufacturer or DEFAULT_VENDOR,
            "status": self.status_for(product),
            "variants": [variant],
            "metafields": build_metafields(product, markup),
        }
        if product.category:
            payload["product_type"] = product.category
        if product.image:
            payload["images"] = [{"src": product.image}]
        if product.description_en:
            payload["body_html"] = product.get_sanitized_html()
        return payload

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    def save_snapshot(self, rows: List[Dict]) -> Optional[Path]:
        path = Path(self.config.storage_dir) / f"products_{datetime.now():%Y%m%d}.json"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(rows, f, indent=2, default=str)
        except OSError as e:
            logger.warning(f"Could not save product snapshot: {e}")
            return None
        logger.info(f"Saved product snapshot to {path}")
        return path

    def run(self, start_batch: int = 0) -> SyncReport:
        logger.info("Starting product sync")
        started = time.monotonic()
        report = SyncReport(name="products")

        try:
            rows = self.powerbody.get_product_list()
        except PowerBodyError as e:
            report.add_error(f"Failed to fetch product list from PowerBody: {e}")
            logger.error(report.errors[-1])
            return report
        if not rows:
            logger.warning("No products returned from PowerBody API")
            return report
        logger.info(f"Fetched {len(rows)} products from PowerBody")
        self.save_snapshot(rows)

        try:
            existing = index_by_sku(self.shopify.get_all_products())
            location_id = self.shopify.location_id
        except ShopifyError as e:
            report.add_error(f"Failed to load existing Shopify products: {e}")
            logger.error(report.errors[-1])
            return report

        size = max(1, self.config.product_batch_size)
        batches = [rows[i:i + size] for i in range(0, len(rows), size)]
        if start_batch >= len(batches):
            logger.warning(f"Start batch {start_batch} is beyond the last batch ({len(batches) - 1})")
            return report

        for batch_index in range(start_batch, len(batches)):
            logger.info(f"Processing batch {batch_index}/{len(batches) - 1} with {len(batches[batch_index])} products")
            self.sync_batch(batches[batch_index], existing, location_id, report)
            if batch_index < len(batches) - 1:
                time.sleep(BATCH_PAUSE_SECONDS)

        self.store.set_watermark(SyncType.PRODUCT)
        logger.info(f"Product sync completed in {time.monotonic() - started:.2f}s: {report.summary()}")
        return report

    def fetch_details(self, products: List[Dict]) -> Dict[str, Dict]:
        details = {}
        for row in products:
            product_id = str(row.get("product_id"))
            try:
                info = self.powerbody.get_product_info(product_id)
            except PowerBodyError as e:
                logger.warning(f"Failed to fetch product details for {product_id}: {e}")
                continue
            if isinstance(info, dict):
                details[product_id] = info
        logger.info(f"Fetched details for {len(details)} of {len(products)} products")
        return details

    def sync_batch(self, batch: List[Dict], existing: Dict[str, Dict], location_id: Optional[int],
                   report: SyncReport) -> None:
        details = self.fetch_details([row for row in batch if not row.get("status") or not row.get("manufacturer")])

        to_create: List[Tuple[PowerBodyProduct, Dict]] = []
        to_update: List[Tuple[PowerBodyProduct, Dict]] = []
        to_archive: List[Dict] = []
        inventory: List[Dict] = []

        for row in batch:
            merged = {**row, **details.get(str(row.get("product_id")), {})}
            try:
                product = PowerBodyProduct(**merged)
            except ValidationError as e:
                report.add_error(f"Invalid PowerBody product {row.get('product_id')}: {e}")
                logger.error(report.errors[-1])
                continue

            match = existing.get(product.sku)
            if product.is_archived:
                remote_id = match["product"]["id"] if match else self._mapped_product_id(product.sku)
                if remote_id:
                    to_archive.append({"id": remote_id, "status": "archived"})
                else:
                    report.skipped += 1
                continue

            payload = self.transform(product)
            if match:
                to_update.append((product, self._update_payload(payload, match)))
                if match["variant"].get("inventory_item_id") and location_id:
                    inventory.append({
                        "inventory_item_id": match["variant"]["inventory_item_id"],
                        "location_id": location_id,
                        "available": product.qty,
                    })
            elif product.qty <= 0 and self.config.skip_zero_inventory:
                logger.debug(f"Skipping zero-inventory product {product.sku}")
                report.skipped += 1
            else:
                to_create.append((product, payload))

        inventory.extend(self._create(to_create, location_id, report))
        self._update(to_update, report)
        if to_archive:
            self._tally(self.shopify.bulk_update_products(to_archive), report, "archive")
        if inventory:
            self._tally(self.shopify.bulk_update_inventory(inventory), report, "inventory", count_success=False)

    def _mapped_product_id(self, sku: str) -> Optional[int]:
        """Shopify id recorded for a SKU, for products whose variant SKU no longer matches."""
        mapping = self.store.lookup_product_by_sku(sku)
        return int(mapping.remote_id) if mapping else None

    @staticmethod
    def _update_payload(payload: Dict, match: Dict) -> Dict:
        """Existing products only get price and inventory tracking on their variant."""
        update = {k: v for k, v in payload.items() if k not in ("options", "metafields", "variants")}
        update["id"] = match["product"]["id"]
        variant = payload["variants"][0]
        update["variants"] = [{
            "id": match["variant"]["id"],
            "price": variant["price"],
            "inventory_management": variant["inventory_management"],
        }]
        return update

    @staticmethod
    def _tally(result: BulkResult, report: SyncReport, label: str, count_success: bool = True) -> None:
        if count_success:
            report.succeeded += result.success_count
        for failure in result.failed:
            report.add_error(f"Product {label} failed: {failure.get('error')}")

    def _create(self, to_create: List[Tuple[PowerBodyProduct, Dict]], location_id: Optional[int],
                report: SyncReport) -> List[Dict]:
        """Creates new products; returns inventory updates for their fresh variants."""
        if not to_create:
            return []
        logger.info(f"Creating {len(to_create)} products in Shopify")
        by_sku = {product.sku: product for product, _ in to_create}
        result = self.shopify.create_products_batch([payload for _, payload in to_create])
        self._tally(result, report, "create")

        inventory = []
        for created in result.succeeded:
            variant = (created.get("variants") or [{}])[0]
            product = by_sku.get(variant.get("sku"))
            if product is None:
                continue
            self.store.upsert_mapping(MappingKind.PRODUCT, product.product_id, created["id"], product.sku)
            if variant.get("inventory_item_id") and location_id:
                inventory.append({
                    "inventory_item_id": variant["inventory_item_id"],
                    "location_id": location_id,
                    "available": product.qty,
                })
            collection_id = resolve_collection(product.category, self.config.category_collections)
            if collection_id:
                try:
                    self.shopify.add_product_to_collection(collection_id, created["id"])
                except ShopifyError as e:
                    logger.error(f"Failed to add product {created['id']} to collection {collection_id}: {e}")
        return inventory

    def _update(self, to_update: List[Tuple[PowerBodyProduct, Dict]], report: SyncReport) -> None:
        if not to_update:
            return
        logger.info(f"Updating {len(to_update)} products in Shopify")
        by_id = {str(payload["id"]): product for product, payload in to_update}
        result = self.shopify.bulk_update_products([payload for _, payload in to_update])
        self._tally(result, report, "update")

        markup = self.config.price_markup_percent
        for updated in result.succeeded:
            product = by_id.get(str(updated.get("id")))
            if product is None:
                continue
            self.store.upsert_mapping(MappingKind.PRODUCT, product.product_id, updated["id"], product.sku)
            try:
                errors = self.shopify.set_product_metafields(updated["id"], build_metafields(product, markup))
            except ShopifyError as e:
                errors = [str(e)]
            if errors:
                logger.warning(f"Metafields not fully updated for product {updated['id']}: {errors}")
# ============================================================================
# End of product_sync.py — Version: 1.4.1
# ============================================================================
