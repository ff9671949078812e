# ============================================================================
#  mapping_store.py — SQLite Mapping & Watermark Store
#  Version: 1.1.2
#  CHANGES: Watermarks and comment ledger rows built through their models,
#           SKU lookup backs archiving of products with renamed SKUs
# ============================================================================
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Set, Union
from models import CommentDirection, CommentSyncRecord, KeyMapping, MappingKind, SyncType, SyncWatermark

logger = logging.getLogger(__name__)

# kind -> (table, timestamp column)
TABLES = {
    MappingKind.ORDER: ("order_mapping", "created_at"),
    MappingKind.PRODUCT: ("product_mapping", "last_synced"),
    MappingKind.REFUND: ("refund_mapping", "created_at"),
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS order_mapping (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    local_id TEXT NOT NULL UNIQUE,
    remote_id TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL,
    UNIQUE(local_id, remote_id)
);
CREATE TABLE IF NOT EXISTS product_mapping (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    local_id TEXT NOT NULL UNIQUE,
    remote_id TEXT NOT NULL UNIQUE,
    sku TEXT,
    last_synced TEXT NOT NULL,
    UNIQUE(local_id, remote_id)
);
CREATE INDEX IF NOT EXISTS idx_product_mapping_sku ON product_mapping(sku);
CREATE TABLE IF NOT EXISTS refund_mapping (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    local_id TEXT NOT NULL UNIQUE,
    remote_id TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL,
    UNIQUE(local_id, remote_id)
);
CREATE TABLE IF NOT EXISTS sync_state (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sync_type TEXT NOT NULL UNIQUE,
    last_sync TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS comment_sync (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    direction TEXT NOT NULL,
    comment_id TEXT NOT NULL,
    synced_at TEXT NOT NULL,
    UNIQUE(direction, comment_id)
);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class MappingStore:
    """
    Durable identity mapping between PowerBody (local_id) and Shopify
    (remote_id), plus per-type sync watermarks and the comment ledger.
    Every write runs in its own transaction.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), timeout=30)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()
        logger.info(f"Mapping store opened at {db_path}")

    def _init_schema(self) -> None:
        with self.conn:
            self.conn.executescript(SCHEMA)
            start = (utcnow() - timedelta(days=1)).isoformat()
            for sync_type in SyncType:
                self.conn.execute(
                    "INSERT OR IGNORE INTO sync_state (sync_type, last_sync) VALUES (?, ?)",
                    (sync_type.value, start),
                )

    def close(self) -> None:
        self.conn.close()

    # ------------------------------------------------------------------
    # Mappings
    # ------------------------------------------------------------------

    def _row_to_mapping(self, kind: MappingKind, row: sqlite3.Row) -> KeyMapping:
        _, ts_column = TABLES[kind]
        return KeyMapping(
            kind=kind,
            local_id=row["local_id"],
            remote_id=row["remote_id"],
            sku=row["sku"] if kind == MappingKind.PRODUCT else None,
            created_at=_parse_ts(row[ts_column]),
        )

    def _lookup(self, kind: MappingKind, column: str, value) -> Optional[KeyMapping]:
        table, _ = TABLES[kind]
        row = self.conn.execute(f"SELECT * FROM {table} WHERE {column} = ?", (str(value),)).fetchone()
        return self._row_to_mapping(kind, row) if row else None

    def lookup_by_local(self, kind: MappingKind, local_id) -> Optional[KeyMapping]:
        return self._lookup(kind, "local_id", local_id)

    def lookup_by_remote(self, kind: MappingKind, remote_id) -> Optional[KeyMapping]:
        return self._lookup(kind, "remote_id", remote_id)

    def lookup_product_by_sku(self, sku: str) -> Optional[KeyMapping]:
        if not sku:
            return None
        return self._lookup(MappingKind.PRODUCT, "sku", sku)

    def product_skus(self) -> Set[str]:
        rows = self.conn.execute("SELECT sku FROM product_mapping WHERE sku IS NOT NULL AND sku != ''")
        return {row["sku"] for row in rows}

    def count_mappings(self, kind: MappingKind) -> int:
        table, _ = TABLES[kind]
        return self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def upsert_mapping(self, kind: MappingKind, local_id, remote_id, sku: Optional[str] = None) -> bool:
        """
        Stores the pair once. Repeating the same pair is a no-op (product rows
        get their sku/last_synced refreshed). A pair that collides with a
        different existing row is treated as already handled: logged, and
        False is returned.
        """
        table, ts_column = TABLES[kind]
        local_id, remote_id = str(local_id), str(remote_id)
        now = utcnow().isoformat()

        existing = self.lookup_by_local(kind, local_id)
        if existing and existing.remote_id == remote_id:
            if kind == MappingKind.PRODUCT:
                with self.conn:
                    self.conn.execute(
                        "UPDATE product_mapping SET sku = COALESCE(?, sku), last_synced = ? WHERE local_id = ?",
                        (sku, now, local_id),
                    )
            return True

        try:
            with self.conn:
                if kind == MappingKind.PRODUCT:
                    self.conn.execute(
                        "INSERT INTO product_mapping (local_id, remote_id, sku, last_synced) VALUES (?, ?, ?, ?)",
                        (local_id, remote_id, sku, now),
                    )
                else:
                    self.conn.execute(
                        f"INSERT INTO {table} (local_id, remote_id, {ts_column}) VALUES (?, ?, ?)",
                        (local_id, remote_id, now),
                    )
        except sqlite3.IntegrityError as e:
            logger.warning(f"{kind.value} mapping {local_id} -> {remote_id} already handled: {e}")
            return False

        logger.debug(f"Saved {kind.value} mapping {local_id} -> {remote_id}")
        return True

    # ------------------------------------------------------------------
    # Watermarks
    # ------------------------------------------------------------------

    def get_sync_state(self, sync_type: SyncType) -> SyncWatermark:
        row = self.conn.execute(
            "SELECT last_sync FROM sync_state WHERE sync_type = ?", (sync_type.value,)
        ).fetchone()
        if row is None:
            return SyncWatermark(sync_type=sync_type, last_sync=utcnow() - timedelta(days=1))
        return SyncWatermark(sync_type=sync_type, last_sync=_parse_ts(row["last_sync"]))

    def get_watermark(self, sync_type: SyncType) -> datetime:
        return self.get_sync_state(sync_type).last_sync

    def set_watermark(self, sync_type: SyncType, when: Optional[datetime] = None) -> datetime:
        when = when or utcnow()
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        state = SyncWatermark(sync_type=sync_type, last_sync=when)
        with self.conn:
            self.conn.execute(
                "INSERT INTO sync_state (sync_type, last_sync) VALUES (?, ?) "
                "ON CONFLICT(sync_type) DO UPDATE SET last_sync = excluded.last_sync",
                (state.sync_type.value, state.last_sync.isoformat()),
            )
        logger.info(f"Updated {sync_type.value} watermark to {state.last_sync.isoformat()}")
        return state.last_sync

    # ------------------------------------------------------------------
    # Comment ledger
    # ------------------------------------------------------------------

    def is_comment_synced(self, direction: CommentDirection, comment_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM comment_sync WHERE direction = ? AND comment_id = ?",
            (direction.value, comment_id),
        ).fetchone()
        return row is not None

    def mark_comment_synced(self, direction: CommentDirection, comment_id: str) -> bool:
        entry = CommentSyncRecord(direction=direction, comment_id=comment_id, synced_at=utcnow())
        with self.conn:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO comment_sync (direction, comment_id, synced_at) VALUES (?, ?, ?)",
                (entry.direction.value, entry.comment_id, entry.synced_at.isoformat()),
            )
        return cursor.rowcount > 0
# ============================================================================
# End of mapping_store.py — Version: 1.1.2
# ============================================================================
