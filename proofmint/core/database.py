import structlog
from typing import List, Any, Dict, Optional
from contextlib import contextmanager
from datetime import datetime

import psycopg2
from psycopg2 import errors, extras
from psycopg2.pool import SimpleConnectionPool

from proofmint import config
from proofmint.core.errors import DuplicateTransactionError, MalformedRecordError
from proofmint.core.utils import new_record_id
from proofmint.models.proofs import ProofRecord, ProofRecordBase
from proofmint.models.purchases import PurchaseRecord, PurchasedContent

logger = structlog.get_logger()

class Database:
    """PostgreSQL connection pool handle, owned by the process that creates it."""

    def __init__(self, dsn: str = config.DATABASE_DSN,
                 min_connections: int = config.DB_MIN_CONNECTIONS,
                 max_connections: int = config.DB_MAX_CONNECTIONS):
        self.dsn = dsn
        self.min_connections = min_connections
        self.max_connections = max_connections
        self._pool = None

    def initialize(self):
        """Initialize the connection pool."""
        if self._pool is None:
            try:
                self._pool = SimpleConnectionPool(self.min_connections, self.max_connections, self.dsn)
                logger.info("Database connection pool initialized",
                            min_connections=self.min_connections,
                            max_connections=self.max_connections)
            except Exception as e:
                logger.error("Failed to initialize database connection pool", error=str(e))
                raise
        return self

    @contextmanager
    def connection(self):
        """Context manager for pooled connections with rollback on error."""
        if self._pool is None:
            self.initialize()

        conn = None
        try:
            conn = self._pool.getconn()
            yield conn
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error("Database operation failed", error=str(e))
            raise
        finally:
            if conn:
                self._pool.putconn(conn)

    def connect(self):
        """Dedicated connection outside the pool, e.g. to hold a session-level lock."""
        return psycopg2.connect(self.dsn)

    def check_connection(self) -> bool:
        try:
            with self.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    result = cur.fetchone()
            return result[0] == 1
        except Exception as e:
            logger.error("Database connection check failed", error=str(e))
            return False

    def close(self):
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

class ProofStore:
    """Reads and writes media_proofs rows."""

    def __init__(self, db: Database):
        self.db = db

    def upsert(self, record: ProofRecordBase, record_id: Optional[str] = None) -> ProofRecord:
        """
        Insert a proof record or overwrite its mutable fields.

        Rows are keyed by original_hash, so re-running the persist step of a
        retried job never creates a duplicate. id, created_at and is_public keep
        the values of the first write.
        """
        sql = """
        INSERT INTO media_proofs (
            id, original_hash, metadata_uri, asset_id, owner_wallet,
            file_extension, price_lamports, title, description, is_public
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (original_hash) DO UPDATE SET
            metadata_uri = EXCLUDED.metadata_uri,
            asset_id = EXCLUDED.asset_id,
            owner_wallet = EXCLUDED.owner_wallet,
            file_extension = EXCLUDED.file_extension,
            price_lamports = EXCLUDED.price_lamports,
            title = EXCLUDED.title,
            description = EXCLUDED.description,
            updated_at = NOW()
        RETURNING *
        """
        try:
            with self.db.connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(sql, (
                        record_id or new_record_id(),
                        record.original_hash,
                        record.metadata_uri,
                        record.asset_id,
                        record.owner_wallet,
                        record.file_extension,
                        record.price_lamports,
                        record.title,
                        record.description,
                        record.is_public,
                    ))
                    row = cur.fetchone()
                    conn.commit()

            logger.info("Proof record upserted",
                        proof_record_id=str(row["id"]), original_hash=record.original_hash,
                        asset_id=record.asset_id)
            return _proof_from_row(row)

        except psycopg2.DataError as e:
            # Invalid values such as a non-UUID id are never retried
            logger.error("Proof record rejected by database",
                         original_hash=record.original_hash, error=str(e))
            raise MalformedRecordError(f"Malformed proof record: {e}".strip())
        except Exception as e:
            logger.error("Failed to upsert proof record",
                         original_hash=record.original_hash, error=str(e))
            raise

    def get(self, proof_record_id: str) -> Optional[ProofRecord]:
        return self._fetch_one("SELECT * FROM media_proofs WHERE id::text = %s", (proof_record_id,))

    def get_by_hash(self, original_hash: str) -> Optional[ProofRecord]:
        return self._fetch_one("SELECT * FROM media_proofs WHERE original_hash = %s", (original_hash.lower(),))

    def _fetch_one(self, sql: str, params: tuple) -> Optional[ProofRecord]:
        try:
            with self.db.connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(sql, params)
                    row = cur.fetchone()
            return _proof_from_row(row) if row else None
        except Exception as e:
            logger.error("Failed to load proof record", error=str(e))
            raise

class PurchaseStore:
    """Reads and writes purchases rows."""

    def __init__(self, db: Database):
        self.db = db

    def exists(self, tx_signature: str) -> bool:
        sql = "SELECT 1 FROM purchases WHERE tx_signature = %s"
        try:
            with self.db.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, (tx_signature,))
                    return cur.fetchone() is not None
        except Exception as e:
            logger.error("Failed to check purchase", tx_signature=tx_signature, error=str(e))
            raise

    def insert(self, purchase: PurchaseRecord) -> PurchaseRecord:
        """Record a purchase; the tx_signature unique constraint is the double-spend guard."""
        sql = """
        INSERT INTO purchases (
            id, proof_record_id, buyer_wallet, seller_wallet, tx_signature,
            amount_lamports, download_token, download_expires_at, download_count
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING *
        """
        try:
            with self.db.connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(sql, (
                        purchase.id,
                        purchase.proof_record_id,
                        purchase.buyer_wallet,
                        purchase.seller_wallet,
                        purchase.tx_signature,
                        purchase.amount_lamports,
                        purchase.download_token,
                        purchase.download_expires_at,
                        purchase.download_count,
                    ))
                    row = cur.fetchone()
                    conn.commit()

            logger.info("Purchase recorded",
                        purchase_id=purchase.id, proof_record_id=purchase.proof_record_id,
                        tx_signature=purchase.tx_signature)
            return _purchase_from_row(row)

        except errors.UniqueViolation:
            logger.warning("Duplicate purchase transaction rejected", tx_signature=purchase.tx_signature)
            raise DuplicateTransactionError()
        except Exception as e:
            logger.error("Failed to insert purchase", tx_signature=purchase.tx_signature, error=str(e))
            raise

    def get_by_token(self, download_token: str) -> Optional[PurchaseRecord]:
        sql = "SELECT * FROM purchases WHERE download_token = %s"
        try:
            with self.db.connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(sql, (download_token,))
                    row = cur.fetchone()
            return _purchase_from_row(row) if row else None
        except Exception as e:
            logger.error("Failed to load purchase by token", error=str(e))
            raise

    def consume_download(self, download_token: str, now: datetime, max_downloads: int) -> Optional[Dict[str, Any]]:
        """
        Atomically spend one download from the token's budget.

        Returns the purchase row joined with the proof's original_hash and
        file_extension, or None when the token is unknown, expired or exhausted.
        """
        sql = """
        UPDATE purchases p
        SET download_count = p.download_count + 1
        FROM media_proofs m
        WHERE p.download_token = %s
          AND p.proof_record_id = m.id
          AND p.download_count < %s
          AND p.download_expires_at >= %s
        RETURNING p.id, p.proof_record_id, p.download_count, m.original_hash, m.file_extension
        """
        try:
            with self.db.connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(sql, (download_token, max_downloads, now))
                    row = cur.fetchone()
                    conn.commit()
            return dict(row) if row else None
        except Exception as e:
            logger.error("Failed to consume download", error=str(e))
            raise

    def latest_for_buyer(self, proof_record_id: str, buyer_wallet: str) -> Optional[PurchaseRecord]:
        sql = """
        SELECT * FROM purchases
        WHERE proof_record_id::text = %s AND buyer_wallet = %s
        ORDER BY created_at DESC
        LIMIT 1
        """
        try:
            with self.db.connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(sql, (proof_record_id, buyer_wallet))
                    row = cur.fetchone()
            return _purchase_from_row(row) if row else None
        except Exception as e:
            logger.error("Failed to check purchase status",
                         proof_record_id=proof_record_id, buyer_wallet=buyer_wallet, error=str(e))
            raise

    def list_for_buyer(self, buyer_wallet: str) -> List[PurchasedContent]:
        sql = """
        SELECT p.id AS purchase_id, m.id AS proof_record_id, m.original_hash, m.title,
               m.asset_id, p.download_token, p.created_at AS purchased_at
        FROM purchases p
        JOIN media_proofs m ON m.id = p.proof_record_id
        WHERE p.buyer_wallet = %s
        ORDER BY p.created_at DESC
        """
        try:
            with self.db.connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(sql, (buyer_wallet,))
                    rows = cur.fetchall()
            return [PurchasedContent(**_stringify_ids(dict(row))) for row in rows]
        except Exception as e:
            logger.error("Failed to list purchases", buyer_wallet=buyer_wallet, error=str(e))
            raise

def _stringify_ids(row: Dict[str, Any]) -> Dict[str, Any]:
    for key in ("id", "proof_record_id", "purchase_id"):
        if key in row and row[key] is not None:
            row[key] = str(row[key])
    return row

def _proof_from_row(row) -> ProofRecord:
    return ProofRecord(**_stringify_ids(dict(row)))

def _purchase_from_row(row) -> PurchaseRecord:
    return PurchaseRecord(**_stringify_ids(dict(row)))
