# ============================================================================
#  product_cache.py — PowerBody Product File Cache
#  Version: 1.2.1
#  CHANGES: Atomic writes via temp file + rename, expiry read from entry
# ============================================================================
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Optional, Union
from pydantic import ValidationError
from models import CacheEntry

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60
LIST_ENTRY_ID = "list"


class ProductCache:
    """
    One JSON file per product (product_<id>.json) plus product_list.json for
    the full catalogue. Entries expire by age only; there is no size eviction.
    """

    def __init__(self, cache_dir: Union[str, Path], ttl_seconds: float = DEFAULT_TTL_SECONDS):
        self.cache_dir = Path(cache_dir)
        self.ttl_seconds = ttl_seconds
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, entity_id: Union[str, int]) -> Path:
        if str(entity_id) == LIST_ENTRY_ID:
            return self.cache_dir / "product_list.json"
        return self.cache_dir / f"product_{entity_id}.json"

    def _read(self, path: Path) -> Optional[CacheEntry]:
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            return CacheEntry(**raw)
        except (OSError, ValueError, TypeError, ValidationError) as e:
            # Half-written or foreign file: treat as a miss
            logger.warning(f"Invalid cache file {path.name}: {e}")
            return None

    def _write(self, path: Path, entry: CacheEntry) -> bool:
        fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(entry.model_dump_json(indent=2))
            os.replace(tmp_name, path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to save cache file {path.name}: {e}")
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            return False

    def get(self, entity_id: Union[str, int]) -> Optional[Any]:
        """Returns the cached payload, or None on miss/expiry."""
        path = self._path(entity_id)
        entry = self._read(path)
        if entry is None:
            return None
        if not entry.is_valid(time.time()):
            logger.debug(f"Cache expired for: {path.name}")
            return None
        logger.debug(f"Loaded from cache: {path.name}")
        return entry.payload

    def put(self, entity_id: Union[str, int], payload: Any) -> bool:
        now = time.time()
        entry = CacheEntry(
            entity_id=str(entity_id),
            cached_at=now,
            expires_at=now + self.ttl_seconds,
            payload=payload,
        )
        saved = self._write(self._path(entity_id), entry)
        if saved:
            logger.debug(f"Saved to cache: {self._path(entity_id).name}")
        return saved

    def get_list(self) -> Optional[Any]:
        return self.get(LIST_ENTRY_ID)

    def put_list(self, payload: Any) -> bool:
        return self.put(LIST_ENTRY_ID, payload)

    def invalidate(self, entity_id: Optional[Union[str, int]] = None) -> int:
        """Removes one entry, or every product entry when no id is given."""
        if entity_id is not None:
            path = self._path(entity_id)
            if path.exists():
                path.unlink()
                logger.info(f"Cleared cache for product ID: {entity_id}")
                return 1
            return 0

        count = 0
        for path in self.cache_dir.glob("product_*.json"):
            path.unlink()
            count += 1
        logger.info(f"Cleared {count} product cache files")
        return count
# ============================================================================
# End of product_cache.py — Version: 1.2.1
# ============================================================================
