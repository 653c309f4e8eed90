"""
Store and queue tests against a real PostgreSQL server.

Set TEST_DATABASE_DSN to a disposable database to run them; the schema is
applied and the tables truncated before each test.
"""

import os
import threading
import uuid
from datetime import timedelta
from pathlib import Path

import psycopg2
import pytest

from proofmint.core.database import Database, ProofStore, PurchaseStore
from proofmint.core.errors import DuplicateTransactionError, MalformedRecordError
from proofmint.core.job_queue import JobQueue
from proofmint.core.utils import generate_download_token, new_record_id, utcnow
from proofmint.models.proofs import ProofRecordBase
from proofmint.models.purchases import PurchaseRecord
from tests.conftest import new_address

TEST_DSN = os.getenv("TEST_DATABASE_DSN")
SCHEMA = Path(__file__).parent.parent / "schema.sql"

pytestmark = pytest.mark.skipif(not TEST_DSN, reason="TEST_DATABASE_DSN not set")

@pytest.fixture
def db():
    db = Database(dsn=TEST_DSN, min_connections=1, max_connections=2)
    try:
        db.initialize()
    except psycopg2.OperationalError as e:
        pytest.skip(f"PostgreSQL unavailable: {e}")
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA.read_text())
            cur.execute("TRUNCATE purchases, media_proofs, mint_jobs")
        conn.commit()
    yield db
    db.close()

@pytest.fixture
def proofs(db):
    return ProofStore(db)

@pytest.fixture
def purchases(db):
    return PurchaseStore(db)

def proof_base(**overrides):
    fields = {
        "original_hash": "ab" * 32,
        "metadata_uri": "https://gateway.test/1",
        "asset_id": "asset-7",
        "owner_wallet": new_address(),
        "file_extension": "JPG",
    }
    fields.update(overrides)
    return ProofRecordBase(**fields)

def new_purchase(proof, **overrides):
    fields = {
        "id": new_record_id(),
        "proof_record_id": proof.id,
        "buyer_wallet": new_address(),
        "seller_wallet": proof.owner_wallet,
        "tx_signature": f"free_{uuid.uuid4().hex}",
        "download_token": generate_download_token(),
        "download_expires_at": utcnow() + timedelta(hours=24),
    }
    fields.update(overrides)
    return PurchaseRecord(**fields)

def count_rows(db, table):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM {table}")
            return cur.fetchone()[0]

def test_upsert_twice_keeps_one_row(db, proofs):
    first = proofs.upsert(proof_base(asset_id="asset-7", is_public=False))
    second = proofs.upsert(proof_base(asset_id="asset-8", title="Retitled"), record_id=new_record_id())

    assert count_rows(db, "media_proofs") == 1
    assert second.id == first.id
    assert second.created_at == first.created_at
    assert second.is_public is False
    assert second.asset_id == "asset-8"
    assert second.title == "Retitled"
    assert proofs.get_by_hash("AB" * 32).file_extension == "JPG"

def test_upsert_with_non_uuid_id_is_fatal(db, proofs):
    with pytest.raises(MalformedRecordError):
        proofs.upsert(proof_base(), record_id="not-a-uuid")
    assert count_rows(db, "media_proofs") == 0

def test_duplicate_signature_rejected(proofs, purchases):
    proof = proofs.upsert(proof_base())
    purchases.insert(new_purchase(proof, tx_signature="5abc"))

    with pytest.raises(DuplicateTransactionError):
        purchases.insert(new_purchase(proof, tx_signature="5abc"))

def test_concurrent_downloads_stop_at_ceiling(db, proofs, purchases):
    proof = proofs.upsert(proof_base())
    token = purchases.insert(new_purchase(proof)).download_token
    granted = []
    lock = threading.Lock()

    def redeem():
        store = PurchaseStore(Database(dsn=TEST_DSN, min_connections=1, max_connections=1))
        try:
            for _ in range(5):
                grant = store.consume_download(token, utcnow(), 10)
                if grant:
                    with lock:
                        granted.append(grant["download_count"])
        finally:
            store.db.close()

    threads = [threading.Thread(target=redeem) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(granted) == list(range(1, 11))
    assert purchases.get_by_token(token).download_count == 10

def test_expired_token_is_not_consumed(proofs, purchases):
    proof = proofs.upsert(proof_base())
    token = purchases.insert(new_purchase(proof, download_expires_at=utcnow() - timedelta(seconds=1))).download_token

    assert purchases.consume_download(token, utcnow(), 10) is None
    assert purchases.get_by_token(token).download_count == 0

def test_queue_lease_requeue_and_complete(db):
    queue = JobQueue(db, name=f"test-{uuid.uuid4().hex}")
    job_id = queue.enqueue({
        "userWallet": new_address(),
        "originalHash": "ab" * 32,
        "rootSigner": "root",
        "rootCertChain": "chain",
        "mediaFilePath": "media/ab/original.JPG",
    })

    leased = queue.lease()
    assert leased.job_id == job_id
    assert leased.attempts_made == 1
    assert queue.lease() is None

    assert queue.requeue(job_id)
    assert not queue.requeue(job_id)

    leased = queue.lease()
    queue.update_progress(job_id, 65)
    queue.update_progress(job_id, 15)
    assert queue.get_job(job_id).progress == 65

    queue.complete(job_id, {"assetId": "asset-7"})
    job = queue.get_job(job_id)
    assert job.state == "completed"
    assert job.attempts_made == 2
    assert job.result == {"assetId": "asset-7"}

def test_purge_finished_keeps_recent_jobs(db):
    queue = JobQueue(db, name=f"test-{uuid.uuid4().hex}")
    payload = {
        "userWallet": new_address(),
        "originalHash": "ab" * 32,
        "rootSigner": "root",
        "rootCertChain": "chain",
        "mediaFilePath": "media/ab/original.JPG",
    }
    kept, dropped = queue.enqueue(payload), queue.enqueue(payload)
    for job_id in (kept, dropped):
        queue.lease()
        queue.fail(job_id, "Malformed ledger address")
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute("UPDATE mint_jobs SET finished_at = NOW() - INTERVAL '8 days' WHERE id::text = %s",
                        (dropped,))
        conn.commit()

    assert queue.purge_finished(failed_age=7 * 24 * 3600) == 1
    assert queue.get_job(kept).state == "failed"
