import os
import time
import structlog
from typing import List
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
import uvicorn

from proofmint import config
from proofmint.core.database import Database, ProofStore, PurchaseStore
from proofmint.core.errors import ProofMintError
from proofmint.core.job_queue import JobQueue
from proofmint.core.ledger import LedgerClient
from proofmint.core.storage import StorageClient
from proofmint.core.utils import configure_logging
from proofmint.models.jobs import EnqueueResponse, JobStatusResponse, MintJobPayload
from proofmint.models.proofs import ProofRecord
from proofmint.models.purchases import (
    PurchaseCheckResponse, PurchasedContent, PurchaseRequest, PurchaseResponse,
)
from proofmint.services.downloads import DownloadService
from proofmint.services.purchase import PurchaseVerifier

configure_logging()

logger = structlog.get_logger()

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the process-owned client handles on startup and release them on shutdown."""
    logger.info("Starting ProofMint API")
    db = Database()
    try:
        storage_client = StorageClient()
        ledger = LedgerClient()
        proofs = ProofStore(db)
        purchases = PurchaseStore(db)

        app.state.db = db
        app.state.storage_client = storage_client
        app.state.job_queue = JobQueue(db)
        app.state.proofs = proofs
        app.state.purchases = purchases
        app.state.purchase_verifier = PurchaseVerifier(proofs, purchases, ledger)
        app.state.download_service = DownloadService(purchases, storage_client)

        if db.check_connection():
            logger.info("Database connection verified")
        else:
            logger.warning("Database connection check failed")

    except Exception as e:
        logger.error("Failed to initialize application", error=str(e))
        raise

    yield

    logger.info("Shutting down ProofMint API")
    db.close()

app = FastAPI(
    title="ProofMint API",
    description="Media authenticity proof issuance and purchase fulfillment",
    version=config.API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Dependencies

def get_db(request: Request) -> Database:
    return request.app.state.db

def get_storage_client(request: Request) -> StorageClient:
    return request.app.state.storage_client

def get_job_queue(request: Request) -> JobQueue:
    return request.app.state.job_queue

def get_proof_store(request: Request) -> ProofStore:
    return request.app.state.proofs

def get_purchase_store(request: Request) -> PurchaseStore:
    return request.app.state.purchases

def get_purchase_verifier(request: Request) -> PurchaseVerifier:
    return request.app.state.purchase_verifier

def get_download_service(request: Request) -> DownloadService:
    return request.app.state.download_service

def public_message(exc: ProofMintError) -> str:
    """Never expose internal details of server-side failures."""
    if exc.status_code >= 500:
        return "Internal server error"
    return exc.message

# Endpoints

@app.get("/", response_model=dict)
async def root():
    """Root endpoint with API information."""
    return {
        "name": "ProofMint API",
        "version": config.API_VERSION,
        "docs_url": "/docs",
        "health_url": "/health",
    }

@app.get("/health", response_model=dict)
def health_check(db: Database = Depends(get_db), storage_client: StorageClient = Depends(get_storage_client)):
    """Health check of the database and private storage."""
    db_healthy = db.check_connection()
    storage_health = storage_client.health_check()
    components = {
        "database": "healthy" if db_healthy else "unhealthy",
        "storage": "healthy" if storage_health.get("available") else "unhealthy",
    }
    overall_status = "healthy" if all(s == "healthy" for s in components.values()) else "degraded"
    return {
        "status": overall_status,
        "version": config.API_VERSION,
        "components": {**components, "storage_health": storage_health},
    }

@app.get("/metrics", response_model=dict)
def queue_metrics(queue: JobQueue = Depends(get_job_queue)):
    """Mint queue counts by state."""
    try:
        counts = queue.counts()
    except Exception as e:
        logger.error("Error fetching queue metrics", error=str(e))
        return JSONResponse(status_code=500, content={"error": "Failed to fetch metrics"})
    return {"queue": queue.name, "counts": counts, "timestamp": time.time()}

@app.post("/mint-jobs", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
def enqueue_mint_job(payload: MintJobPayload, queue: JobQueue = Depends(get_job_queue)):
    """Enqueue a mint job for a verified upload; returns immediately."""
    job_id = queue.enqueue(payload)
    return EnqueueResponse(job_id=job_id)

@app.get("/job-status/{job_id}", response_model=JobStatusResponse)
def get_job_status(job_id: str, queue: JobQueue = Depends(get_job_queue)):
    """Poll the state, progress and outcome of a mint job."""
    job = queue.get_job(job_id)
    return JobStatusResponse(
        job_id=job.job_id,
        state=job.state,
        progress=job.progress,
        attempts_made=job.attempts_made,
        result=job.result,
        failed_reason=job.failed_reason,
        created_at=job.created_at,
        processed_at=job.processed_at,
        finished_at=job.finished_at,
    )

@app.get("/proof/{original_hash}", response_model=ProofRecord)
def get_proof(original_hash: str, proofs: ProofStore = Depends(get_proof_store)):
    """Public proof lookup by content hash."""
    proof = proofs.get_by_hash(original_hash)
    if proof is None:
        return JSONResponse(status_code=404, content={"error": "Proof not found"})
    return proof

@app.post("/purchase", response_model=PurchaseResponse, response_model_exclude_none=True)
def purchase(body: PurchaseRequest, verifier: PurchaseVerifier = Depends(get_purchase_verifier)):
    """Verify a payment claim and issue a download token."""
    try:
        record = verifier.verify(body.proof_record_id, body.buyer_wallet, body.tx_signature)
    except ProofMintError as e:
        return JSONResponse(
            status_code=e.status_code,
            content=PurchaseResponse(success=False, error=public_message(e)).model_dump(by_alias=True, exclude_none=True),
        )
    return PurchaseResponse(success=True, purchase_id=record.id, download_token=record.download_token)

@app.get("/purchase-check", response_model=PurchaseCheckResponse, response_model_exclude_none=True)
def purchase_check(
    proof_record_id: str = Query(default="", alias="proofRecordId"),
    wallet_address: str = Query(default="", alias="walletAddress"),
    verifier: PurchaseVerifier = Depends(get_purchase_verifier),
):
    """Whether a wallet has purchased a proof, with its download token if so."""
    purchase_record = verifier.check_purchase(proof_record_id, wallet_address)
    if purchase_record is None:
        return PurchaseCheckResponse(purchased=False)
    return PurchaseCheckResponse(purchased=True, download_token=purchase_record.download_token)

@app.get("/purchased-content", response_model=List[PurchasedContent])
def purchased_content(
    wallet_address: str = Query(default="", alias="walletAddress"),
    purchases: PurchaseStore = Depends(get_purchase_store),
):
    """A buyer's purchases, newest first."""
    if not wallet_address:
        return JSONResponse(status_code=400, content={"error": "Wallet address is required"})
    return purchases.list_for_buyer(wallet_address)

@app.get("/download/{token}")
def download(token: str, downloads: DownloadService = Depends(get_download_service)):
    """Redeem a download token and redirect to a short-lived signed URL."""
    url = downloads.redeem(token)
    return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

@app.exception_handler(ProofMintError)
async def proofmint_exception_handler(request: Request, exc: ProofMintError):
    if exc.status_code >= 500:
        logger.error("Request failed", url=str(request.url), method=request.method, error=str(exc))
    return JSONResponse(status_code=exc.status_code, content={"error": public_message(exc)})

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception",
                 url=str(request.url), method=request.method, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_server_error", "message": "An unexpected error occurred"}
    )

if __name__ == "__main__":
    uvicorn.run(
        "proofmint.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", 8000)),
        reload=os.getenv("DEBUG", "false").lower() == "true",
        log_config=None,  # We handle logging with structlog
    )
