# ============================================================================
#  config.py — Environment Configuration
#  Version: 1.1.0
#  CHANGES: Moved env parsing out of main, typed key lookup, JSON list fields
# ============================================================================
import json
import logging
from typing import Dict, List, Mapping, Optional
from pydantic import BaseModel, Field, ValidationError, field_validator
from exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TITLE_CLEANUP_PATTERNS = [
    r"\s*\(EAN\s*\d+\)",
    r"\s*EAN:?\s*\d{8,14}",
    r"\s{2,}",
]

REQUIRED_KEYS = [
    "POWERBODY_USER",
    "POWERBODY_PASS",
    "SHOPIFY_STORE",
    "SHOPIFY_ACCESS_TOKEN",
]

SECRET_KEYS = {"POWERBODY_PASS", "SHOPIFY_ACCESS_TOKEN"}


class SyncConfig(BaseModel):
    """Typed view of the .env settings, keyed by their environment names."""

    powerbody_wsdl: str = Field("http://www.powerbody.co.uk/api/soap/?wsdl", alias="POWERBODY_API_WSDL")
    powerbody_user: str = Field("", alias="POWERBODY_USER")
    powerbody_pass: str = Field("", alias="POWERBODY_PASS")
    shopify_store: str = Field("", alias="SHOPIFY_STORE")
    shopify_access_token: str = Field("", alias="SHOPIFY_ACCESS_TOKEN")
    shopify_api_version: str = Field("2024-10", alias="SHOPIFY_API_VERSION")
    shopify_location_id: Optional[int] = Field(None, alias="SHOPIFY_LOCATION_ID")
    price_markup_percent: float = Field(0.0, alias="PRICE_MARKUP_PERCENT")
    cache_ttl_days: float = Field(7.0, alias="CACHE_TTL_DAYS")
    storage_dir: str = Field("storage", alias="STORAGE_DIR")
    orders_file: Optional[str] = Field(None, alias="ORDERS_FILE")
    product_batch_size: int = Field(50, alias="PRODUCT_BATCH_SIZE")
    zero_inventory_status: str = Field("draft", alias="ZERO_INVENTORY_STATUS")
    skip_zero_inventory: bool = Field(False, alias="SKIP_ZERO_INVENTORY")
    title_cleanup_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_TITLE_CLEANUP_PATTERNS),
                                              alias="TITLE_CLEANUP_PATTERNS")
    category_collections: Dict[str, int] = Field(default_factory=dict, alias="CATEGORY_COLLECTIONS")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = {"populate_by_name": True}

    @field_validator("shopify_store", "shopify_access_token", mode="before")
    @classmethod
    def _strip_quotes(cls, value):
        # Trim whitespace and quotes (common issue with .env files)
        return (value or "").strip().strip('"\'').strip()

    @field_validator("shopify_location_id", "orders_file", mode="before")
    @classmethod
    def _blank_as_none(cls, value):
        if value in ("", "0", 0):
            return None
        return value

    @field_validator("title_cleanup_patterns", "category_collections", mode="before")
    @classmethod
    def _decode_json(cls, value):
        if isinstance(value, str):
            return json.loads(value) if value.strip() else None
        return value

    @field_validator("zero_inventory_status")
    @classmethod
    def _known_status(cls, value):
        value = value.lower()
        if value not in ("draft", "active"):
            raise ValueError("ZERO_INVENTORY_STATUS must be 'draft' or 'active'")
        return value

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "SyncConfig":
        known = {field.alias for field in cls.model_fields.values()}
        values = {key: value for key, value in env.items() if key in known}
        # Drop JSON fields that decode to nothing so the defaults apply
        for key in ("TITLE_CLEANUP_PATTERNS", "CATEGORY_COLLECTIONS"):
            if key in values and not values[key].strip():
                del values[key]
        try:
            return cls(**values)
        except (ValidationError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}", cause=e)

    def get(self, key: str, default=None):
        """Look up a setting by its environment variable name."""
        for name, field in type(self).model_fields.items():
            if field.alias == key:
                return getattr(self, name)
        return default

    def missing_required(self) -> List[str]:
        return [key for key in REQUIRED_KEYS if not self.get(key)]

    def require(self, *keys: str) -> None:
        missing = [key for key in (keys or REQUIRED_KEYS) if not self.get(key)]
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")

    def masked(self) -> Dict[str, str]:
        summary = {}
        for name, field in type(self).model_fields.items():
            value = getattr(self, name)
            if field.alias in SECRET_KEYS:
                value = f"{'*' * min(len(value or ''), 20)}... (hidden)"
            summary[field.alias] = str(value)
        return summary

    def log_summary(self) -> None:
        logger.info("=" * 80)
        logger.info("Configuration Summary:")
        for key, value in self.masked().items():
            logger.info(f"  {key}: {value}")
        logger.info("=" * 80)
# ============================================================================
# End of config.py — Version: 1.1.0
# ============================================================================
