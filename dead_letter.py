# ============================================================================
#  dead_letter.py — File-backed Dead-Letter Queue
#  Version: 1.0.4
#  CHANGES: Short reason code in file names, failure text kept in the record
# ============================================================================
import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union
from pydantic import ValidationError
from models import DeadLetterRecord, DeadLetterStatus

logger = logging.getLogger(__name__)

PENDING_SUFFIX = ".json"
CLAIMED_SUFFIX = ".json.claimed"
MAX_SLUG_LENGTH = 40


def _slug(value, limit: int = MAX_SLUG_LENGTH) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "_", str(value)).strip("_").lower()[:limit].rstrip("_")
    return slug or "unknown"


def likely_failure_reasons(order: Dict) -> List[str]:
    """Quick diagnosis of a dead-lettered Shopify order, for the replay log."""
    reasons = []
    customer_email = (order.get("customer") or {}).get("email") or order.get("email")
    if not customer_email:
        reasons.append("Missing customer email")
    if not (order.get("shipping_address") or {}).get("address1"):
        reasons.append("Missing shipping address")
    line_items = order.get("line_items") or []
    if not line_items:
        reasons.append("No line items")
    for item in line_items:
        if not item.get("sku"):
            reasons.append(f"Line item missing SKU: {item.get('name', 'unknown item')}")
    return reasons


class DeadLetterQueue:
    """
    One JSON file per failed order under the storage directory.

    pending:   dead_letter_order_<reason>_<order>_<ts>.json
    claimed:   <pending>.claimed
    terminal:  <pending>.processed_<ts> / <pending>.failed_<ts>

    Nothing is ever deleted.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _pending(self, record_id: str) -> Path:
        return self.directory / f"{record_id}{PENDING_SUFFIX}"

    def _claimed(self, record_id: str) -> Path:
        return self.directory / f"{record_id}{CLAIMED_SUFFIX}"

    def _write(self, path: Path, record: DeadLetterRecord) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".dead_letter.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _load(self, path: Path) -> Optional[DeadLetterRecord]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return DeadLetterRecord(**json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError, ValidationError) as e:
            logger.error(f"Invalid JSON in dead letter file {path.name}: {e}")
            return None

    def record(self, entity_id, payload: Dict, reason: str, details: Optional[str] = None) -> DeadLetterRecord:
        """
        Saves a failed order. `reason` is a short code used in the file name
        (validation_failed, create_failed, exception, ...); `details` is the
        free text kept in the record only.
        """
        now = datetime.now(timezone.utc)
        base = f"dead_letter_order_{_slug(reason)}_{_slug(entity_id)}_{now:%Y%m%d%H%M%S}"
        record_id, n = base, 1
        while self._pending(record_id).exists() or self._claimed(record_id).exists():
            record_id = f"{base}_{n}"
            n += 1

        record = DeadLetterRecord(
            record_id=record_id,
            entity_id=str(entity_id),
            payload=payload,
            failure_reason=f"{reason}: {details}" if details else reason,
            created_at=now,
        )
        self._write(self._pending(record_id), record)
        logger.error(f"Order {entity_id} saved to dead letter queue: {self._pending(record_id).name}")
        return record

    def list_pending(self) -> List[DeadLetterRecord]:
        """Pending records, newest first."""
        records = []
        for path in self.directory.glob(f"dead_letter_order_*{PENDING_SUFFIX}"):
            record = self._load(path)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: (r.created_at, r.record_id), reverse=True)
        return records

    def get(self, record_id: str) -> Optional[DeadLetterRecord]:
        return self._load(self._pending(record_id)) or self._load(self._claimed(record_id))

    def claim(self, record_id: str) -> Optional[DeadLetterRecord]:
        """Takes exclusive ownership of a pending record; None if someone else has it."""
        try:
            os.rename(self._pending(record_id), self._claimed(record_id))
        except FileNotFoundError:
            return None
        logger.info(f"Claimed dead letter record {record_id}")
        return self._load(self._claimed(record_id))

    def claim_latest(self) -> Optional[DeadLetterRecord]:
        for record in self.list_pending():
            claimed = self.claim(record.record_id)
            if claimed is not None:
                return claimed
        return None

    def release(self, record_id: str) -> bool:
        try:
            os.rename(self._claimed(record_id), self._pending(record_id))
        except FileNotFoundError:
            return False
        return True

    def _finish(self, record_id: str, status: DeadLetterStatus) -> Optional[Path]:
        source = self._claimed(record_id)
        if not source.exists():
            source = self._pending(record_id)
        record = self._load(source)
        if record is None:
            logger.error(f"Dead letter record not found: {record_id}")
            return None

        target = self.directory / f"{record_id}{PENDING_SUFFIX}.{status.value}_{datetime.now(timezone.utc):%Y%m%d%H%M%S}"
        os.rename(source, target)
        self._write(target, record.model_copy(update={"status": status}))
        logger.info(f"Marked dead letter file as {status.value}: {target.name}")
        return target

    def mark_processed(self, record_id: str) -> Optional[Path]:
        return self._finish(record_id, DeadLetterStatus.PROCESSED)

    def mark_failed(self, record_id: str) -> Optional[Path]:
        return self._finish(record_id, DeadLetterStatus.FAILED)
# ============================================================================
# End of dead_letter.py — Version: 1.0.4
# ============================================================================
