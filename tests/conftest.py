import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
from solders.keypair import Keypair

from proofmint.core.errors import DuplicateTransactionError, JobNotFoundError, StorageError
from proofmint.core.ledger import MintReceipt
from proofmint.core.utils import new_record_id
from proofmint.models.jobs import JobState, MintJob, MintJobPayload
from proofmint.models.proofs import ProofRecord

def new_address() -> str:
    return str(Keypair().pubkey())

class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

class FakeLedger:
    """In-memory identifier tree; mint() appends one leaf per call."""

    def __init__(self, counter=0, mint_delay=0.0):
        self.counter = counter
        self.mint_delay = mint_delay
        self.mints = []
        self.transactions = {}
        self.mint_error = None
        self.interleave_before_mint = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def fetch_counter(self, tree_address=None):
        return self.counter

    def derive_identifier(self, leaf_index, tree_address=None):
        return f"asset-{leaf_index}"

    def mint(self, owner_address, metadata_uri, name, symbol="PMINT"):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.mint_delay:
                time.sleep(self.mint_delay)
            if self.mint_error is not None:
                raise self.mint_error
            # Another minter landing first shifts our leaf.
            self.counter += self.interleave_before_mint
            self.interleave_before_mint = 0
            self.counter += 1
            signature = f"sig-{len(self.mints) + 1}"
            self.mints.append({"owner": owner_address, "uri": metadata_uri, "name": name, "signature": signature})
            return MintReceipt(tx_signature=signature, post_counter=self.counter)
        finally:
            with self._lock:
                self.in_flight -= 1

    def get_transaction(self, signature):
        return self.transactions.get(signature)

class FakeDurableStorage:
    def __init__(self, failures=0):
        self.failures = failures
        self.uploads = []

    def upload(self, data, content_type="application/json", tags=None):
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("Durable upload failed: 503")
        self.uploads.append({"data": data, "content_type": content_type, "tags": tags})
        return f"https://gateway.test/{len(self.uploads)}"

class FakeStorage:
    def __init__(self):
        self.signed = []

    def generate_download_url(self, key, ttl_seconds=3600):
        self.signed.append((key, ttl_seconds))
        return f"https://storage.test/{key}?expires={ttl_seconds}"

    def health_check(self):
        return {"available": True, "error": None}

class FakeProofStore:
    def __init__(self):
        self.records = {}
        self.upserts = 0

    def upsert(self, record, record_id=None):
        self.upserts += 1
        existing = self.records.get(record.original_hash)
        if existing:
            data = record.model_dump()
            data.update(id=existing.id, created_at=existing.created_at, is_public=existing.is_public)
        else:
            data = record.model_dump()
            data.update(id=record_id or new_record_id(), created_at=datetime.now(timezone.utc))
        proof = ProofRecord(**data)
        self.records[record.original_hash] = proof
        return proof

    def add(self, **fields):
        fields.setdefault("id", new_record_id())
        fields.setdefault("original_hash", "ab" * 32)
        fields.setdefault("metadata_uri", "https://gateway.test/meta")
        fields.setdefault("asset_id", "asset-0")
        fields.setdefault("owner_wallet", new_address())
        fields.setdefault("file_extension", "jpg")
        proof = ProofRecord(**fields)
        self.records[proof.original_hash] = proof
        return proof

    def get(self, proof_record_id):
        for proof in self.records.values():
            if proof.id == proof_record_id:
                return proof
        return None

    def get_by_hash(self, original_hash):
        return self.records.get(original_hash.lower())

class FakePurchaseStore:
    """Purchases keyed by id with a unique tx_signature and an atomic download counter."""

    def __init__(self, proofs):
        self.proofs = proofs
        self.rows = {}
        self._lock = threading.Lock()

    def exists(self, tx_signature):
        return any(p.tx_signature == tx_signature for p in self.rows.values())

    def insert(self, purchase):
        with self._lock:
            if any(p.tx_signature == purchase.tx_signature for p in self.rows.values()):
                raise DuplicateTransactionError()
            stored = purchase.model_copy(update={"created_at": datetime.now(timezone.utc)})
            self.rows[stored.id] = stored
            return stored

    def get_by_token(self, download_token):
        for purchase in self.rows.values():
            if purchase.download_token == download_token:
                return purchase
        return None

    def consume_download(self, download_token, now, max_downloads):
        with self._lock:
            purchase = self.get_by_token(download_token)
            if purchase is None:
                return None
            proof = self.proofs.get(purchase.proof_record_id)
            if proof is None or purchase.download_count >= max_downloads or purchase.download_expires_at < now:
                return None
            purchase.download_count += 1
            return {
                "id": purchase.id,
                "proof_record_id": purchase.proof_record_id,
                "download_count": purchase.download_count,
                "original_hash": proof.original_hash,
                "file_extension": proof.file_extension,
            }

    def latest_for_buyer(self, proof_record_id, buyer_wallet):
        matches = [p for p in self.rows.values()
                   if p.proof_record_id == proof_record_id and p.buyer_wallet == buyer_wallet]
        return matches[-1] if matches else None

    def list_for_buyer(self, buyer_wallet):
        return []

class FakeJobQueue:
    """Thread-safe in-memory queue that records every state transition."""

    def __init__(self, name="test-queue", lock_available=True):
        self.name = name
        self.lock_available = lock_available
        self.jobs = {}
        self.history = {}
        self.progress_updates = {}
        self.retries = []
        self.orphans_recovered = 0
        self.lock_released = False
        self._lock = threading.Lock()

    def _transition(self, job, state):
        job.state = state
        self.history.setdefault(job.job_id, []).append(state)

    def enqueue(self, payload):
        if not isinstance(payload, MintJobPayload):
            payload = MintJobPayload.model_validate(payload)
        job = MintJob(job_id=new_record_id(), payload=payload, state=JobState.WAITING.value)
        with self._lock:
            self.jobs[job.job_id] = job
            self.history[job.job_id] = [JobState.WAITING.value]
        return job.job_id

    def get_job(self, job_id):
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError()
        return job

    def counts(self):
        counts = {state.value: 0 for state in JobState}
        for job in self.jobs.values():
            counts[job.state] += 1
        return counts

    def acquire_worker_lock(self):
        return self.lock_available

    def release_worker_lock(self):
        self.lock_released = True

    def recover_orphaned(self):
        recovered = 0
        for job in self.jobs.values():
            if job.state == JobState.ACTIVE.value:
                self._transition(job, JobState.WAITING.value)
                recovered += 1
        self.orphans_recovered = recovered
        return recovered

    def lease(self):
        with self._lock:
            for job in self.jobs.values():
                if job.state in (JobState.WAITING.value, JobState.DELAYED.value):
                    job.attempts_made += 1
                    self._transition(job, JobState.ACTIVE.value)
                    return job.model_copy()
        return None

    def update_progress(self, job_id, progress):
        job = self.jobs[job_id]
        self.progress_updates.setdefault(job_id, []).append(progress)
        job.progress = max(job.progress, progress)

    def complete(self, job_id, result):
        job = self.jobs[job_id]
        job.progress = 100
        job.result = result
        job.failed_reason = None
        self._transition(job, JobState.COMPLETED.value)

    def schedule_retry(self, job_id, reason, delay_seconds):
        job = self.jobs[job_id]
        job.failed_reason = reason
        self.retries.append((job_id, delay_seconds))
        self._transition(job, JobState.DELAYED.value)

    def fail(self, job_id, reason):
        job = self.jobs[job_id]
        job.failed_reason = reason
        self._transition(job, JobState.FAILED.value)

    def requeue(self, job_id):
        job = self.jobs[job_id]
        if job.state != JobState.ACTIVE.value:
            return False
        self._transition(job, JobState.WAITING.value)
        return True

    def purge_finished(self, *args, **kwargs):
        return 0

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def ledger():
    return FakeLedger(counter=7)

@pytest.fixture
def durable_storage():
    return FakeDurableStorage()

@pytest.fixture
def storage():
    return FakeStorage()

@pytest.fixture
def proofs():
    return FakeProofStore()

@pytest.fixture
def purchases(proofs):
    return FakePurchaseStore(proofs)

@pytest.fixture
def job_queue():
    return FakeJobQueue()

@pytest.fixture
def payload():
    return MintJobPayload(
        user_wallet=new_address(),
        original_hash="3f" * 32,
        root_signer="CN=Example Camera Root CA",
        root_cert_chain="TUlJQmVEQ0NBUjZnQXdJQkFnSVVYeC4uLg==",
        media_file_path="media/3f3f/original.JPG",
        thumbnail_uri="https://cdn.test/thumb.jpg",
        price=0,
        title="Harbour at dawn",
    )
