# ============================================================================
#  powerbody_client.py — PowerBody SOAP API Handler
#  Version: 1.3.2
#  CHANGES: Explicit session value, re-login on retry, tagged results for
#           mutating calls, cache-aware product reads
# ============================================================================
import json
import logging
import re
import time
from typing import Any, Dict, List, Optional
import requests
from zeep import Client
from zeep.exceptions import Error as ZeepError
from zeep.helpers import serialize_object
from zeep.transports import Transport
from exceptions import PowerBodyError, SessionError, ValidationFailed
from models import ApiOutcome, PowerBodyResult, SoapSession
from product_cache import ProductCache

logger = logging.getLogger(__name__)

SESSION_LIFETIME_SECONDS = 600
REQUIRED_ORDER_FIELDS = ['id', 'currency_rate', 'transport_code', 'address', 'products']
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Faults from the SOAP layer, the HTTP transport underneath it, or a dropped socket
SOAP_ERRORS = (ZeepError, requests.RequestException, ConnectionError)


def normalize_response(raw: Any) -> Any:
    """Turns zeep objects into plain data and decodes JSON-encoded strings."""
    result = serialize_object(raw)
    if isinstance(result, bytes):
        result = result.decode("utf-8", errors="replace")
    if isinstance(result, str):
        stripped = result.strip()
        if stripped[:1] in ("{", "["):
            try:
                return json.loads(stripped)
            except ValueError:
                logger.debug(f"PowerBody response looked like JSON but did not decode: {stripped[:200]}")
    return result


def as_record_list(result: Any) -> List[Dict]:
    if not result:
        return []
    if isinstance(result, list):
        return [r for r in result if isinstance(r, dict)]
    if isinstance(result, dict):
        values = list(result.values())
        if values and all(isinstance(v, dict) for v in values):
            return values
        return [result]
    logger.error(f"Expected list from PowerBody API, got {type(result).__name__}")
    return []


class PowerBodyClient:
    def __init__(self, wsdl: str, username: str, password: str, cache: ProductCache,
                 service: Any = None, max_attempts: int = 3, retry_base_seconds: float = 1.0,
                 session_lifetime: float = SESSION_LIFETIME_SECONDS):
        self.wsdl = wsdl
        self.username = username
        self.password = password
        self.cache = cache
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.session_lifetime = session_lifetime
        self.session: Optional[SoapSession] = None
        self.service = service if service is not None else self._build_service(wsdl)

        logger.info("=" * 80)
        logger.info("PowerBody API Configuration:")
        logger.info(f"  WSDL: {wsdl}")
        logger.info(f"  User: {username}")
        logger.info(f"  Password: {'*' * min(len(password or ''), 20)}... (hidden)")
        logger.info(f"  Cache Dir: {cache.cache_dir}")
        logger.info("=" * 80)

    @staticmethod
    def _build_service(wsdl: str):
        # No keep-alive, no WSDL cache: the endpoint drops idle connections
        http = requests.Session()
        http.headers.update({"Connection": "close"})
        transport = Transport(session=http, cache=None, timeout=60, operation_timeout=120)
        try:
            return Client(wsdl, transport=transport).service
        except SOAP_ERRORS as e:
            raise PowerBodyError(f"Could not load PowerBody WSDL from {wsdl}: {e}", cause=e)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def login(self) -> SoapSession:
        self.end_session()
        try:
            token = self.service.login(self.username, self.password)
        except SOAP_ERRORS as e:
            self.session = None
            logger.error(f"Failed to login to PowerBody API: {e}")
            raise SessionError(f"Failed to login to PowerBody API: {e}", cause=e)
        if not token:
            raise SessionError("PowerBody login returned an empty session")
        self.session = SoapSession(token=str(token), started_at=time.time(), lifetime=self.session_lifetime)
        logger.info("Successfully logged into PowerBody API")
        return self.session

    def end_session(self) -> None:
        if self.session is None:
            return
        try:
            self.service.endSession(self.session.token)
            logger.debug("Ended previous PowerBody API session")
        except SOAP_ERRORS as e:
            # A new session is created anyway
            logger.warning(f"Error ending PowerBody API session: {e}")
        self.session = None

    def ensure_fresh(self) -> SoapSession:
        """Returns a usable session, logging in again when absent or expired."""
        if self.session is None:
            return self.login()
        if self.session.is_expired(time.time()):
            logger.info("PowerBody API session expired based on lifetime, renewing")
            return self.login()
        return self.session

    def invalidate(self) -> None:
        self.session = None

    def close(self) -> None:
        self.end_session()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def call_with_retry(self, method: str, params: Any = None) -> Any:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_attempts):
            try:
                # Get a fresh session if we're retrying
                session = self.login() if attempt > 0 else self.ensure_fresh()
                raw = self.service.call(session.token, method, params)
                result = normalize_response(raw)
                self.session = session.touched(time.time())
                logger.debug(f"PowerBody {method} returned {type(result).__name__}")
                return result
            except SessionError as e:
                last_error = e
            except SOAP_ERRORS as e:
                last_error = e
                logger.warning(f"PowerBody API call {method} failed (attempt {attempt + 1}/{self.max_attempts}): {e}")
                if "session" in str(e).lower():
                    self.invalidate()
                    logger.info("Session error detected, will force login on next attempt")

            if attempt < self.max_attempts - 1:
                delay = self.retry_base_seconds * (2 ** attempt)
                logger.debug(f"Sleeping for {delay:.1f}s before retry")
                time.sleep(delay)

        logger.error(f"PowerBody API call {method} failed after {self.max_attempts} attempts")
        raise PowerBodyError(f"PowerBody API call {method} failed after {self.max_attempts} attempts: {last_error}",
                             cause=last_error)

    # ------------------------------------------------------------------
    # Products (cache-aware)
    # ------------------------------------------------------------------

    def get_product_list(self) -> List[Dict]:
        logger.info("Fetching product list from PowerBody API")
        cached = self.cache.get_list()
        if cached is not None:
            logger.info(f"Using cached product list ({len(cached)} products)")
            return cached

        result = as_record_list(self.call_with_retry("dropshipping.getProductList"))
        if result:
            self.cache.put_list(result)
            logger.info(f"Saved product list to cache ({len(result)} products)")
        return result

    def get_product_info(self, product_id) -> Optional[Dict]:
        cached = self.cache.get(product_id)
        if cached is not None:
            logger.debug(f"Using cached product info for ID {product_id}")
            return cached

        logger.info(f"Fetching product info from API for ID: {product_id}")
        info = self.call_with_retry("dropshipping.getProductInfo", product_id)
        if info:
            self.cache.put(product_id, info)
        return info or None

    def refresh_product_cache(self, product_id) -> bool:
        logger.info(f"Forcefully refreshing cache for product ID: {product_id}")
        try:
            info = self.call_with_retry("dropshipping.getProductInfo", product_id)
        except PowerBodyError as e:
            logger.error(f"Failed to refresh product cache: {e}")
            return False
        if not info:
            return False
        return self.cache.put(product_id, info)

    def clear_product_cache(self, product_id=None) -> int:
        return self.cache.invalidate(product_id)

    # ------------------------------------------------------------------
    # Orders, refunds, comments (never cached)
    # ------------------------------------------------------------------

    @staticmethod
    def _encode_filter(filter_: Optional[Dict]) -> Optional[str]:
        if not filter_:
            return None
        for key in ("from", "to"):
            if key in filter_ and not _DATE_RE.match(str(filter_[key])):
                logger.warning(f"Invalid date format for '{key}' parameter, should be YYYY-MM-DD: {filter_[key]}")
        return json.dumps(filter_)

    def get_orders(self, filter_: Optional[Dict] = None) -> List[Dict]:
        logger.info(f"Fetching orders from PowerBody: {filter_}")
        return as_record_list(self.call_with_retry("dropshipping.getOrders", self._encode_filter(filter_)))

    def get_refund_orders(self, filter_: Optional[Dict] = None) -> List[Dict]:
        logger.info(f"Fetching refund orders from PowerBody: {filter_}")
        return as_record_list(self.call_with_retry("dropshipping.getRefundOrders", self._encode_filter(filter_)))

    def get_comments(self) -> List[Dict]:
        logger.info("Fetching comments from PowerBody")
        return as_record_list(self.call_with_retry("dropshipping.getComments"))

    def get_shipping_methods(self) -> List[Dict]:
        return as_record_list(self.call_with_retry("dropshipping.getShippingMethod"))

    def _mutate(self, method: str, payload: Dict, order_id) -> PowerBodyResult:
        response = self.call_with_retry(method, json.dumps(payload, default=str))
        result = PowerBodyResult(outcome=ApiOutcome.from_response(response), response=response)
        if result.outcome in (ApiOutcome.SUCCESS, ApiOutcome.UPDATE_SUCCESS):
            logger.info(f"{method} succeeded for order {order_id}")
        elif result.outcome == ApiOutcome.ALREADY_EXISTS:
            logger.warning(f"Order already exists in PowerBody: {order_id}")
        elif result.outcome == ApiOutcome.INVALID_RESPONSE:
            logger.error(f"Invalid response format from PowerBody for {method}: {order_id}")
        else:
            logger.error(f"{method} returned {result.outcome.value} for order {order_id}")
        return result

    def create_order(self, order_data: Dict) -> PowerBodyResult:
        """
        Creates an order. Outcomes: SUCCESS, ALREADY_EXISTS, FAIL.
        These are final answers from PowerBody and are not retried here.
        """
        for field in REQUIRED_ORDER_FIELDS:
            if field not in order_data:
                logger.warning(f"Missing required field '{field}' in order data ({order_data.get('id', 'unknown')})")
        logger.info(f"Creating order in PowerBody: {order_data.get('id', 'unknown')}")
        return self._mutate("dropshipping.createOrder", order_data, order_data.get("id", "unknown"))

    def update_order(self, order_data: Dict) -> PowerBodyResult:
        """Outcomes: UPDATE_SUCCESS, UPDATE_FAIL."""
        if not order_data.get("id"):
            raise ValidationFailed("Order ID is required for updating an order", errors=["id"])
        return self._mutate("dropshipping.updateOrder", order_data, order_data["id"])

    def insert_comment(self, comment_data: Dict) -> PowerBodyResult:
        if not comment_data.get("id"):
            raise ValidationFailed("Order ID is required for adding a comment", errors=["id"])
        if not isinstance(comment_data.get("comments"), list):
            raise ValidationFailed("Comments array is required for adding comments", errors=["comments"])
        return self._mutate("dropshipping.insertComment", comment_data, comment_data["id"])
# ============================================================================
# End of powerbody_client.py — Version: 1.3.2
# ============================================================================
