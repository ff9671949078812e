# ============================================================================
#  shopify_client.py — Shopify API Handler
#  Version: 2.1.1
#  CHANGES: Retry delays never shrink after a long Retry-After
# ============================================================================
import requests
import logging
import random
import re
import time
from typing import Any, Callable, Dict, Iterator, List, Optional
from urllib.parse import parse_qs, urlparse
from exceptions import ShopifyError
from models import BulkResult
from throttle import QuotaThrottle

logger = logging.getLogger(__name__)

CALL_LIMIT_HEADER = "X-Shopify-Shop-Api-Call-Limit"
ORDER_TAG = "powerbody-dropshipping"
CHUNK_PAUSE_SECONDS = 0.5

PRODUCT_UPDATE_FIELDS = [
    'id', 'title', 'body_html', 'vendor', 'product_type',
    'tags', 'published', 'status', 'variants', 'options',
    'images', 'metafields'
]
VARIANT_UPDATE_FIELDS = [
    'id', 'price', 'compare_at_price', 'inventory_management',
    'inventory_policy', 'sku', 'barcode'
]

_LINK_RE = re.compile(r'<([^>]+)>\s*;\s*rel="?([a-zA-Z]+)"?')


def parse_link_header(header: Optional[str]) -> Dict[str, str]:
    """Map rel -> url for a ``Link`` header."""
    if not header:
        return {}
    return {rel: url for url, rel in _LINK_RE.findall(header)}


def page_info_from(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    values = parse_qs(urlparse(url).query).get("page_info")
    return values[0] if values else None


def clean_product_data(product: Dict) -> Dict:
    """Keep only the fields Shopify accepts on a product update."""
    clean = {field: product[field] for field in PRODUCT_UPDATE_FIELDS if product.get(field) is not None}
    if isinstance(clean.get("variants"), list):
        clean["variants"] = [
            {field: variant[field] for field in VARIANT_UPDATE_FIELDS if variant.get(field) is not None}
            for variant in clean["variants"] if variant.get("id")
        ]
    return clean


class ShopifyClient:
    def __init__(self, store: str, token: str, version: str = "2024-10",
                 location_id: Optional[int] = None, session: Optional[requests.Session] = None,
                 throttle: Optional[QuotaThrottle] = None, max_attempts: int = 3, timeout: int = 30):
        """Initializes the Shopify Client with REST and GraphQL support."""
        # Trim whitespace from token (common issue with env vars)
        token = token.strip() if token else ""

        self.rest_url = f"https://{store}/admin/api/{version}"
        self.admin_url = f"{self.rest_url}/graphql.json"
        self.headers = {
            "X-Shopify-Access-Token": token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        # Use session for connection pooling and reuse
        self.session = session or requests.Session()
        self.session.headers.update(self.headers)
        self.throttle = throttle or QuotaThrottle()
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.next_page_url: Optional[str] = None
        self.prev_page_url: Optional[str] = None
        self._location_id = location_id

        # Log configuration (without exposing token)
        logger.info("=" * 80)
        logger.info("Shopify API Configuration:")
        logger.info(f"  Store: {store}")
        logger.info(f"  API Version: {version}")
        logger.info(f"  REST URL: {self.rest_url}")
        logger.info(f"  Location ID: {location_id or 'auto'}")
        logger.info(f"  Access Token: {'*' * min(len(token), 20)}... (hidden)")
        logger.info("=" * 80)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.rest_url}/{path.lstrip('/')}"

    def _retry_delay(self, retry: int, response: Optional[requests.Response] = None) -> float:
        """Exponential backoff with jitter: 2^retry seconds + up to 1s."""
        delay = (2 ** retry) + random.uniform(0, 1)
        if response is not None and response.status_code == 429:
            try:
                delay = max(delay, float(response.headers.get("Retry-After", 0)))
            except (TypeError, ValueError):
                pass
        return delay

    def _after_response(self, response: requests.Response) -> None:
        links = parse_link_header(response.headers.get("Link"))
        self.next_page_url = links.get("next")
        self.prev_page_url = links.get("previous")
        if self.next_page_url:
            logger.debug(f"Next page URL: {self.next_page_url}")
        self.throttle.after_response(response.headers.get(CALL_LIMIT_HEADER))

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        last_error: Optional[ShopifyError] = None
        delay = 0.0
        for attempt in range(1, self.max_attempts + 1):
            response = None
            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = ShopifyError(f"Connection error on {method} {url}: {e}", cause=e)
            except requests.RequestException as e:
                raise ShopifyError(f"Shopify request error on {method} {url}: {e}", status_code=400, cause=e)
            else:
                self._after_response(response)
                if response.status_code < 400:
                    return response
                last_error = ShopifyError(
                    f"Shopify API request failed: {method} {url}",
                    status_code=response.status_code,
                    body=response.text[:1000] if response.text else None,
                )
                if not last_error.retryable:
                    logger.error(f"{last_error} - Status: {response.status_code}")
                    logger.error(f"  Response: {last_error.body or 'No response body'}")
                    raise last_error

            if attempt < self.max_attempts:
                # Never shorter than the previous wait, even after a long Retry-After
                delay = max(delay, self._retry_delay(attempt, response))
                logger.warning(f"Retry {attempt}/{self.max_attempts - 1} for {method} {url} "
                               f"in {delay:.2f}s ({last_error})")
                time.sleep(delay)

        logger.error(f"Shopify API request failed after {self.max_attempts} attempts: {method} {url}")
        raise last_error

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict] = None) -> Dict:
        """Performs a REST call and returns the decoded JSON body."""
        kwargs: Dict[str, Any] = {}
        if body:
            kwargs["json"] = body
        if params:
            kwargs["params"] = params
        response = self._send(method, self._url(path), **kwargs)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ShopifyError(f"Invalid JSON response from {method} {path}",
                               status_code=response.status_code, body=response.text[:500], cause=e)

    def iter_pages(self, path: str, key: str, params: Optional[Dict] = None) -> Iterator[Dict]:
        """Yields every record of a paginated listing, following Link cursors."""
        params = dict(params or {})
        while True:
            logger.debug(f"Fetching {path} with params: {params}")
            data = self.request("GET", path, params=params)
            yield from data.get(key, [])
            cursor = page_info_from(self.next_page_url)
            if not cursor:
                break
            # Requests carrying page_info may only repeat limit and fields
            params = {k: v for k, v in params.items() if k in ("limit", "fields")}
            params["page_info"] = cursor

    def execute_graphql(self, query: str, variables: Optional[Dict] = None) -> Dict:
        """Executes GraphQL with backoff for THROTTLED status."""
        payload = {"query": query, "variables": variables or {}}
        for attempt in range(self.max_attempts):
            data = self.request("POST", self.admin_url, body=payload)
            errors = data.get("errors", [])
            if any(err.get("extensions", {}).get("code") == "THROTTLED" for err in errors):
                wait = (attempt + 1) * 5
                logger.warning(f"Throttled. Waiting {wait}s...")
                time.sleep(wait)
                continue
            if errors:
                raise ShopifyError(f"GraphQL errors: {errors}", status_code=200)
            return data.get("data") or {}
        raise ShopifyError("GraphQL request still throttled after retries", status_code=429)

    # ------------------------------------------------------------------
    # Locations
    # ------------------------------------------------------------------

    def get_locations(self) -> List[Dict]:
        return self.request("GET", "locations.json").get("locations", [])

    @property
    def location_id(self) -> Optional[int]:
        if self._location_id:
            return self._location_id
        logger.warning("No location ID configured, fetching default location")
        for location in self.get_locations():
            if location.get("active"):
                self._location_id = int(location["id"])
                logger.info(f"Using default location: {self._location_id}")
                break
        else:
            logger.error("Could not find an active location in the store")
        return self._location_id

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def get_products(self, params: Optional[Dict] = None) -> List[Dict]:
        return self.request("GET", "products.json", params=params).get("products", [])

    def get_all_products(self, params: Optional[Dict] = None) -> List[Dict]:
        params = {"limit": 250, **(params or {})}
        products = list(self.iter_pages("products.json", "products", params))
        logger.info(f"Fetched {len(products)} products from Shopify")
        return products

    def get_product(self, product_id: int) -> Optional[Dict]:
        return self.request("GET", f"products/{product_id}.json").get("product")

    def create_product(self, product_data: Dict) -> Optional[Dict]:
        logger.info(f"Creating product in Shopify: {product_data.get('title')}")
        return self.request("POST", "products.json", body={"product": product_data}).get("product")

    def update_product(self, product_id: int, product_data: Dict) -> Optional[Dict]:
        logger.info(f"Updating product in Shopify: {product_id}")
        return self.request("PUT", f"products/{product_id}.json", body={"product": product_data}).get("product")

    def set_product_metafields(self, product_id: int, metafields: List[Dict]) -> List[Dict]:
        """Sets metafields on an existing product; returns the userErrors list."""
        if not metafields:
            return []
        mutation = """mutation($metafields: [MetafieldsSetInput!]!) {
            metafieldsSet(metafields: $metafields) { metafields { id } userErrors { field message } }
        }"""
        owner = f"gid://shopify/Product/{product_id}"
        inputs = [{
            "ownerId": owner,
            "namespace": m["namespace"],
            "key": m["key"],
            "type": m["type"],
            "value": str(m["value"]),
        } for m in metafields]
        data = self.execute_graphql(mutation, {"metafields": inputs})
        errors = (data.get("metafieldsSet") or {}).get("userErrors", [])
        if errors:
            logger.error(f"Metafield errors for product {product_id}: {errors}")
        return errors

    def add_product_to_collection(self, collection_id: int, product_id: int) -> Optional[Dict]:
        body = {"collect": {"collection_id": collection_id, "product_id": product_id}}
        return self.request("POST", "collects.json", body=body).get("collect")

    # ------------------------------------------------------------------
    # Orders, fulfillments and refunds
    # ------------------------------------------------------------------

    def get_orders(self, params: Optional[Dict] = None) -> List[Dict]:
        logger.info(f"Fetching orders from Shopify: {params}")
        return self.request("GET", "orders.json", params=params).get("orders", [])

    def get_all_orders(self, params: Optional[Dict] = None) -> List[Dict]:
        params = {"limit": 250, **(params or {})}
        return list(self.iter_pages("orders.json", "orders", params))

    def get_order(self, order_id: int) -> Optional[Dict]:
        return self.request("GET", f"orders/{order_id}.json").get("order")

    def update_order(self, order_id: int, order_data: Dict) -> Optional[Dict]:
        logger.info(f"Updating order in Shopify: {order_id}")
        body = {"order": {"id": order_id, **order_data}}
        return self.request("PUT", f"orders/{order_id}.json", body=body).get("order")

    def add_note_to_order(self, order_id: int, note: str, existing_note: Optional[str] = None) -> Optional[Dict]:
        if existing_note:
            note = f"{existing_note}\n\n{note}"
        return self.update_order(order_id, {"note": note})

    def add_order_tag(self, order: Dict, tag: str = ORDER_TAG) -> Optional[Dict]:
        tags = [t.strip() for t in (order.get("tags") or "").split(",") if t.strip()]
        if tag in tags:
            return order
        tags.append(tag)
        return self.update_order(order["id"], {"tags": ", ".join(tags)})

    def create_fulfillment(self, order_id: int, fulfillment_data: Dict) -> Optional[Dict]:
        logger.info(f"Creating fulfillment in Shopify for order {order_id}")
        body = {"fulfillment": fulfillment_data}
        return self.request("POST", f"orders/{order_id}/fulfillments.json", body=body).get("fulfillment")

    def update_fulfillment(self, order_id: int, fulfillment_id: int, fulfillment_data: Dict) -> Optional[Dict]:
        logger.info(f"Updating fulfillment {fulfillment_id} for order {order_id}")
        body = {"fulfillment": fulfillment_data}
        path = f"orders/{order_id}/fulfillments/{fulfillment_id}.json"
        return self.request("PUT", path, body=body).get("fulfillment")

    def create_refund(self, order_id: int, refund_data: Dict) -> Optional[Dict]:
        logger.info(f"Creating refund in Shopify for order {order_id}")
        return self.request("POST", f"orders/{order_id}/refunds.json", body={"refund": refund_data}).get("refund")

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def update_inventory_level(self, inventory_item_id: int, location_id: int, quantity: int) -> Optional[Dict]:
        body = {
            "inventory_item_id": inventory_item_id,
            "location_id": location_id,
            "available": quantity,
        }
        return self.request("POST", "inventory_levels/set.json", body=body).get("inventory_level")

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def _run_chunked(self, items: List[Dict], chunk_size: int, label: str,
                     operation: Callable[[Dict], Optional[Dict]]) -> BulkResult:
        result = BulkResult()
        if not items:
            return result
        chunks = [items[i:i + chunk_size] for i in range(0, len(items), chunk_size)]
        logger.info(f"{label}: {len(items)} item(s) in {len(chunks)} chunk(s)")

        for index, chunk in enumerate(chunks):
            logger.debug(f"Processing chunk {index + 1} of {len(chunks)}")
            for item in chunk:
                try:
                    outcome = operation(item)
                except (ShopifyError, ValueError, KeyError) as e:
                    logger.error(f"{label} failed for item: {e}")
                    result.failed.append({"item": item, "error": str(e)})
                    continue
                if outcome:
                    result.succeeded.append(outcome)
                else:
                    result.failed.append({"item": item, "error": "empty response"})
            if index < len(chunks) - 1:
                time.sleep(CHUNK_PAUSE_SECONDS)

        logger.info(f"{label}: {result.success_count} succeeded, {result.failure_count} failed")
        return result

    def create_products_batch(self, products: List[Dict], chunk_size: int = 100) -> BulkResult:
        return self._run_chunked(products, chunk_size, "Create products", self.create_product)

    def bulk_update_products(self, products: List[Dict], chunk_size: int = 5) -> BulkResult:
        # Small chunks avoid 406 Not Acceptable errors on large payloads
        def update(product: Dict) -> Optional[Dict]:
            if not product.get("id"):
                raise ValueError("Cannot update product without ID")
            return self.update_product(product["id"], clean_product_data(product))

        return self._run_chunked(products, chunk_size, "Update products", update)

    def bulk_update_inventory(self, updates: List[Dict], chunk_size: int = 20) -> BulkResult:
        def update(entry: Dict) -> Optional[Dict]:
            if not entry.get("inventory_item_id") or not entry.get("location_id") or "available" not in entry:
                raise ValueError(f"Invalid inventory update data: {entry}")
            return self.update_inventory_level(entry["inventory_item_id"], entry["location_id"], entry["available"])

        return self._run_chunked(updates, chunk_size, "Update inventory", update)
# ============================================================================
# End of shopify_client.py — Version: 2.1.1
# ============================================================================
