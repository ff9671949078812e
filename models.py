# ============================================================================
#  models.py — Pydantic Data Models
#  Version: 2.0.3
#  CHANGES: Added sync state records, tagged PowerBody results, SOAP session
# ============================================================================
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum
import html
import re


class MappingKind(str, Enum):
    ORDER = "order"
    PRODUCT = "product"
    REFUND = "refund"


class SyncType(str, Enum):
    PRODUCT = "product"
    ORDER = "order"
    COMMENT = "comment"
    REFUND = "refund"


class CommentDirection(str, Enum):
    POWERBODY_TO_SHOPIFY = "powerbody_to_shopify"
    SHOPIFY_TO_POWERBODY = "shopify_to_powerbody"


class DeadLetterStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class ApiOutcome(str, Enum):
    """Status vocabulary PowerBody returns in the ``api_response`` field."""
    SUCCESS = "SUCCESS"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    FAIL = "FAIL"
    UPDATE_SUCCESS = "UPDATE_SUCCESS"
    UPDATE_FAIL = "UPDATE_FAIL"
    UNKNOWN = "UNKNOWN"
    INVALID_RESPONSE = "INVALID_RESPONSE"

    @classmethod
    def from_response(cls, response: Any) -> "ApiOutcome":
        if not isinstance(response, dict) or "api_response" not in response:
            return cls.INVALID_RESPONSE
        try:
            return cls(str(response["api_response"]).upper())
        except ValueError:
            return cls.UNKNOWN


class PowerBodyResult(BaseModel):
    """Outcome of a mutating PowerBody call (createOrder, updateOrder, insertComment)."""
    outcome: ApiOutcome
    response: Any = None

    @property
    def ok(self) -> bool:
        return self.outcome in (ApiOutcome.SUCCESS, ApiOutcome.UPDATE_SUCCESS)

    @property
    def accepted(self) -> bool:
        """True when the order now exists remotely, whether or not we created it."""
        return self.outcome in (ApiOutcome.SUCCESS, ApiOutcome.ALREADY_EXISTS)


class SoapSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    started_at: float
    lifetime: float = 600.0

    def is_expired(self, now: float) -> bool:
        return (now - self.started_at) > self.lifetime

    def touched(self, now: float) -> "SoapSession":
        return self.model_copy(update={"started_at": now})


class KeyMapping(BaseModel):
    kind: MappingKind
    local_id: str
    remote_id: str
    sku: Optional[str] = None
    created_at: Optional[datetime] = None


class SyncWatermark(BaseModel):
    sync_type: SyncType
    last_sync: datetime


class CommentSyncRecord(BaseModel):
    direction: CommentDirection
    comment_id: str
    synced_at: datetime


class CacheEntry(BaseModel):
    entity_id: str
    cached_at: float
    expires_at: float
    payload: Any

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class DeadLetterRecord(BaseModel):
    record_id: str
    entity_id: str
    payload: Dict[str, Any]
    failure_reason: str
    created_at: datetime
    status: DeadLetterStatus = DeadLetterStatus.PENDING


class BulkResult(BaseModel):
    succeeded: List[Dict[str, Any]] = Field(default_factory=list)
    failed: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)


class SyncReport(BaseModel):
    name: str
    succeeded: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or self.dead_lettered > 0

    @property
    def exit_code(self) -> int:
        return 1 if self.has_failures else 0

    def add_error(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    def summary(self) -> str:
        return (f"{self.name}: {self.succeeded} succeeded, {self.failed} failed, "
                f"{self.dead_lettered} dead-lettered, {self.skipped} skipped")


class PowerBodyProduct(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    product_id: str
    sku: str = ""
    name: str = "Unknown Product"
    price: Decimal = Decimal("0")
    price_tax: Optional[Decimal] = None
    qty: int = 0
    manufacturer: Optional[str] = None
    status: Optional[str] = None
    image: Optional[str] = None
    description_en: str = ""
    category: Optional[str] = None
    ean: Optional[str] = None
    weight: Optional[Decimal] = None
    servings: Optional[int] = Field(None, alias="portions")
    price_per_serving: Optional[Decimal] = None

    @field_validator("product_id", "sku", mode="before")
    @classmethod
    def _as_text(cls, value):
        return "" if value is None else str(value)

    @field_validator("price", mode="before")
    @classmethod
    def _price_default(cls, value):
        return "0" if value in (None, "") else value

    @field_validator("price_tax", "weight", "price_per_serving", "servings", mode="before")
    @classmethod
    def _blank_as_none(cls, value):
        return None if value == "" else value

    @field_validator("description_en", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return value or ""

    @field_validator("qty", mode="before")
    @classmethod
    def _qty_as_int(cls, value):
        if value in (None, ""):
            return 0
        return int(float(value))

    @property
    def base_price(self) -> Decimal:
        return self.price_tax if self.price_tax else self.price

    @property
    def is_archived(self) -> bool:
        return self.status in ("disabled", "archival")

    @property
    def needs_details(self) -> bool:
        return not self.status or not self.manufacturer

    def get_sanitized_html(self) -> str:
        decoded = html.unescape(self.description_en)
        return re.sub(r'</?h[12]>', lambda m: '</h3>' if m.group().startswith('</') else '<h3>',
                      decoded, flags=re.I)
# ============================================================================
# End of models.py — Version: 2.0.3
# ============================================================================
