import sqlite3, time, logging
from typing import Iterable, List, Optional, Sequence

from zlink_indexer.errors import StoreConflict
from zlink_indexer.models import (
    Checkpoint, EncryptedUnspent, LeafRecord, PublicUnspent, ShieldNote, UnspentRecord,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS checkpoint (
    id                 INTEGER PRIMARY KEY CHECK (id=1),
    last_indexed_block INTEGER NOT NULL,
    latest_block       INTEGER NOT NULL,
    updated_at         INTEGER NOT NULL
);

-- one row per emitted commitment; tree_index is uint256 kept as decimal text
CREATE TABLE IF NOT EXISTS leaves (
    block_number INTEGER NOT NULL,
    log_index    INTEGER NOT NULL,
    tx_id        TEXT NOT NULL,
    commitment   TEXT NOT NULL,
    tree_index   TEXT NOT NULL,
    UNIQUE (tx_id, log_index, block_number)
);
CREATE INDEX IF NOT EXISTS idx_leaves_commitment ON leaves(commitment);
CREATE INDEX IF NOT EXISTS idx_leaves_tree_index ON leaves(tree_index);
CREATE INDEX IF NOT EXISTS idx_leaves_block      ON leaves(block_number);

-- exactly one payload shape per row, selected by is_encrypted
CREATE TABLE IF NOT EXISTS unspents (
    block_number      INTEGER NOT NULL,
    tx_id             TEXT NOT NULL,
    is_encrypted      INTEGER NOT NULL,
    encrypted_payload TEXT,
    shield_address    TEXT,
    amount            TEXT,
    nonce             TEXT,
    token             TEXT,
    UNIQUE (tx_id, block_number),
    CHECK (
        (is_encrypted = 1 AND encrypted_payload IS NOT NULL AND shield_address IS NULL)
     OR (is_encrypted = 0 AND encrypted_payload IS NULL AND shield_address IS NOT NULL
         AND amount IS NOT NULL AND nonce IS NOT NULL AND token IS NOT NULL)
    )
);
CREATE INDEX IF NOT EXISTS idx_unspents_kind  ON unspents(is_encrypted);
CREATE INDEX IF NOT EXISTS idx_unspents_block ON unspents(block_number);
"""

def db(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    return conn

def ensure_schema(conn: sqlite3.Connection):
    conn.executescript(SCHEMA)

def open_db(path: str) -> sqlite3.Connection:
    conn = db(path)
    ensure_schema(conn)
    return conn


class CheckpointStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get_checkpoint(self) -> Optional[Checkpoint]:
        row = self.conn.execute(
            "SELECT last_indexed_block, latest_block FROM checkpoint WHERE id=1"
        ).fetchone()
        if not row:
            return None
        return Checkpoint(row["last_indexed_block"], row["latest_block"])

    def set_checkpoint(self, last_indexed_block: int, latest_observed_block: int) -> None:
        # never moves backwards, even when a retry reads a lower head
        self.conn.execute("""
            INSERT INTO checkpoint (id, last_indexed_block, latest_block, updated_at)
            VALUES (1, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              last_indexed_block=MAX(checkpoint.last_indexed_block, excluded.last_indexed_block),
              latest_block=MAX(checkpoint.latest_block, excluded.latest_block),
              updated_at=excluded.updated_at
        """, (int(last_indexed_block), int(latest_observed_block), int(time.time())))


class RecordStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # ---------- writes ----------
    def _insert_one(self, sql: str, params: tuple) -> None:
        try:
            self.conn.execute(sql, params)
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e):
                raise StoreConflict(str(e)) from e
            raise

    def _insert_all(self, sql: str, rows: Sequence[tuple], what: str) -> int:
        """Insert rows in one transaction; uniqueness collisions are skipped."""
        if not rows:
            return 0
        inserted = skipped = 0
        self.conn.execute("BEGIN")
        try:
            for params in rows:
                try:
                    self._insert_one(sql, params)
                    inserted += 1
                except StoreConflict:
                    skipped += 1
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        self.conn.execute("COMMIT")
        if skipped:
            logger.debug("[db] %s: %d inserted, %d duplicates skipped", what, inserted, skipped)
        return inserted

    def insert_leaves(self, records: Iterable[LeafRecord]) -> int:
        rows = [
            (r.block_number, r.log_index, r.tx_id.lower(), r.commitment.lower(), str(r.tree_index))
            for r in records
        ]
        return self._insert_all("""
            INSERT INTO leaves (block_number, log_index, tx_id, commitment, tree_index)
            VALUES (?,?,?,?,?)
        """, rows, "leaves")

    def insert_unspents(self, records: Iterable[UnspentRecord]) -> int:
        rows = []
        for r in records:
            if isinstance(r, EncryptedUnspent):
                rows.append((r.block_number, r.tx_id.lower(), 1, r.payload, None, None, None, None))
            elif isinstance(r, PublicUnspent):
                n = r.note
                rows.append((r.block_number, r.tx_id.lower(), 0, None, n.shield_address, n.amount, n.nonce, n.token))
            else:
                raise TypeError(f"not an unspent record: {r!r}")
        return self._insert_all("""
            INSERT INTO unspents
              (block_number, tx_id, is_encrypted, encrypted_payload, shield_address, amount, nonce, token)
            VALUES (?,?,?,?,?,?,?,?)
        """, rows, "unspents")

    # ---------- reads ----------
    @staticmethod
    def _leaf(row) -> LeafRecord:
        return LeafRecord(
            block_number=row["block_number"],
            log_index=row["log_index"],
            tx_id=row["tx_id"],
            commitment=row["commitment"],
            tree_index=int(row["tree_index"]),
        )

    @staticmethod
    def _unspent(row) -> UnspentRecord:
        if row["is_encrypted"]:
            return EncryptedUnspent(row["block_number"], row["tx_id"], row["encrypted_payload"])
        return PublicUnspent(row["block_number"], row["tx_id"], ShieldNote(
            shield_address=row["shield_address"], amount=row["amount"],
            nonce=row["nonce"], token=row["token"],
        ))

    def find_leaf_by_commitment(self, commitment: str) -> Optional[LeafRecord]:
        row = self.conn.execute("""
            SELECT block_number, log_index, tx_id, commitment, tree_index
            FROM leaves WHERE commitment=? ORDER BY rowid LIMIT 1
        """, (commitment.lower(),)).fetchone()
        return self._leaf(row) if row else None

    def find_leaves_by_tree_index(self, tree_index: int) -> List[LeafRecord]:
        rows = self.conn.execute("""
            SELECT block_number, log_index, tx_id, commitment, tree_index
            FROM leaves WHERE tree_index=? ORDER BY rowid
        """, (str(int(tree_index)),)).fetchall()
        return [self._leaf(r) for r in rows]

    def count_unspents(self, is_encrypted: bool) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM unspents WHERE is_encrypted=?", (int(is_encrypted),)
        ).fetchone()[0]

    def list_unspents(self, is_encrypted: bool, offset: int, limit: int) -> List[UnspentRecord]:
        rows = self.conn.execute("""
            SELECT block_number, tx_id, is_encrypted, encrypted_payload, shield_address, amount, nonce, token
            FROM unspents WHERE is_encrypted=? ORDER BY rowid LIMIT ? OFFSET ?
        """, (int(is_encrypted), max(0, int(limit)), max(0, int(offset)))).fetchall()
        return [self._unspent(r) for r in rows]
