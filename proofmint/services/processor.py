"""
Mint processor: drives one mint job through

    PREDICT -> PUBLISH -> MINT -> RECONCILE -> PERSIST -> DONE

Any step may raise; the error propagates to the worker, whose retry policy
decides whether the job runs again. Nothing already minted or published is
rolled back, a retried job simply redoes every step.

PREDICT is only meaningful because the worker runs one job at a time
process-wide. The identifier returned by MINT is always authoritative.
"""

import structlog
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from proofmint.core.database import ProofStore
from proofmint.core.ledger import LedgerClient, MintReceipt
from proofmint.core.utils import file_extension_from_path
from proofmint.models.jobs import MintJobPayload, MintJobResult
from proofmint.models.proofs import ProofRecord, ProofRecordBase
from proofmint.services.metadata import MetadataPublisher, proof_name

logger = structlog.get_logger()

class MintStep(str, Enum):
    PREDICT = "predict"
    PUBLISH = "publish"
    MINT = "mint"
    RECONCILE = "reconcile"
    PERSIST = "persist"
    DONE = "done"
    FAILED = "failed"

# Progress reported on entering each step
STEP_PROGRESS = {
    MintStep.PREDICT: 15,
    MintStep.PUBLISH: 35,
    MintStep.MINT: 65,
    MintStep.PERSIST: 85,
    MintStep.DONE: 100,
}

@dataclass
class MintContext:
    job_id: str
    payload: MintJobPayload
    predicted_index: Optional[int] = None
    predicted_asset_id: Optional[str] = None
    metadata_uri: Optional[str] = None
    receipt: Optional[MintReceipt] = None
    actual_index: Optional[int] = None
    actual_asset_id: Optional[str] = None
    proof: Optional[ProofRecord] = None

class MintProcessor:
    """Runs the mint state machine with explicitly injected collaborators."""

    def __init__(self, ledger: LedgerClient, publisher: MetadataPublisher, proofs: ProofStore):
        self.ledger = ledger
        self.publisher = publisher
        self.proofs = proofs
        self._handlers = {
            MintStep.PREDICT: self._predict,
            MintStep.PUBLISH: self._publish,
            MintStep.MINT: self._mint,
            MintStep.RECONCILE: self._reconcile,
            MintStep.PERSIST: self._persist,
        }

    def process(self, job_id: str, payload: MintJobPayload,
                on_progress: Optional[Callable[[int], None]] = None) -> MintJobResult:
        ctx = MintContext(job_id=job_id, payload=payload)
        log = logger.bind(job_id=job_id, original_hash=payload.original_hash)
        step = MintStep.PREDICT

        try:
            while step is not MintStep.DONE:
                if step in STEP_PROGRESS and on_progress:
                    on_progress(STEP_PROGRESS[step])
                log.info("Mint step started", step=step.value)
                step = self._handlers[step](ctx)
        except Exception as e:
            log.error("Mint step failed", step=step.value, next_state=MintStep.FAILED.value, error=str(e))
            raise

        if on_progress:
            on_progress(STEP_PROGRESS[MintStep.DONE])
        log.info("Mint completed", asset_id=ctx.actual_asset_id, proof_record_id=ctx.proof.id)

        return MintJobResult(
            metadata_uri=ctx.metadata_uri,
            asset_id=ctx.actual_asset_id,
            predicted_asset_id=ctx.predicted_asset_id,
            tx_signature=ctx.receipt.tx_signature,
            proof_record_id=ctx.proof.id,
        )

    def _predict(self, ctx: MintContext) -> MintStep:
        ctx.predicted_index = self.ledger.fetch_counter()
        ctx.predicted_asset_id = self.ledger.derive_identifier(ctx.predicted_index)
        logger.info("Predicted next asset ID",
                    job_id=ctx.job_id, leaf_index=ctx.predicted_index, asset_id=ctx.predicted_asset_id)
        return MintStep.PUBLISH

    def _publish(self, ctx: MintContext) -> MintStep:
        ctx.metadata_uri = self.publisher.publish(ctx.payload, ctx.predicted_asset_id)
        return MintStep.MINT

    def _mint(self, ctx: MintContext) -> MintStep:
        ctx.receipt = self.ledger.mint(
            owner_address=ctx.payload.user_wallet,
            metadata_uri=ctx.metadata_uri,
            name=proof_name(ctx.payload.original_hash),
        )
        ctx.actual_index = ctx.receipt.post_counter - 1
        ctx.actual_asset_id = self.ledger.derive_identifier(ctx.actual_index)
        return MintStep.RECONCILE

    def _reconcile(self, ctx: MintContext) -> MintStep:
        if ctx.actual_asset_id != ctx.predicted_asset_id:
            logger.warning("Asset ID mismatch, using actual asset ID",
                           job_id=ctx.job_id,
                           predicted_asset_id=ctx.predicted_asset_id, predicted_index=ctx.predicted_index,
                           actual_asset_id=ctx.actual_asset_id, actual_index=ctx.actual_index)
        else:
            logger.info("Asset ID prediction confirmed", job_id=ctx.job_id, asset_id=ctx.actual_asset_id)
        return MintStep.PERSIST

    def _persist(self, ctx: MintContext) -> MintStep:
        payload = ctx.payload
        record = ProofRecordBase(
            original_hash=payload.original_hash,
            metadata_uri=ctx.metadata_uri,
            asset_id=ctx.actual_asset_id,
            owner_wallet=payload.user_wallet,
            file_extension=file_extension_from_path(payload.media_file_path),
            price_lamports=payload.price,
            title=payload.title,
            description=payload.description,
            is_public=True,
        )
        ctx.proof = self.proofs.upsert(record, record_id=payload.proof_record_id)
        return MintStep.DONE
