"""
Pydantic models for the mint job queue.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from proofmint.core.errors import MalformedAddressError
from proofmint.core.ledger import parse_address

PAYLOAD_SCHEMA_VERSION = 1

class JobState(str, Enum):
    """Lifecycle states of a mint job."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"

class CamelModel(BaseModel):
    """Base model exposing camelCase field names on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)

class MintJobPayload(CamelModel):
    """Versioned payload enqueued once an upload has been verified."""
    schema_version: Literal[1] = Field(default=PAYLOAD_SCHEMA_VERSION, description="Payload schema version")
    user_wallet: str = Field(..., min_length=32, max_length=44, description="Wallet that will own the proof")
    original_hash: str = Field(..., pattern=r"^[0-9a-fA-F]{64}$", description="SHA-256 of the original media file")
    root_signer: str = Field(..., min_length=1, description="Root signer identity of the verified provenance chain")
    root_cert_chain: str = Field(..., min_length=1, description="Base64 encoded certificate chain")
    media_file_path: str = Field(..., min_length=1, description="Private object store path of the original file")
    thumbnail_uri: Optional[str] = Field(None, description="Public thumbnail URL")
    price: int = Field(default=0, ge=0, description="Price in lamports, 0 for free content")
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    proof_record_id: Optional[str] = Field(None, description="Pre-allocated proof record ID")

    @field_validator("original_hash")
    @classmethod
    def normalize_hash(cls, v: str) -> str:
        return v.lower()

    @field_validator("user_wallet")
    @classmethod
    def validate_wallet(cls, v: str) -> str:
        try:
            parse_address(v)
        except MalformedAddressError as e:
            raise ValueError(e.message)
        return v

    @field_validator("proof_record_id")
    @classmethod
    def validate_record_id(cls, v: Optional[str]) -> Optional[str]:
        # media_proofs.id is a UUID column
        if v is None:
            return v
        try:
            return str(uuid.UUID(v))
        except ValueError:
            raise ValueError(f"proofRecordId must be a UUID, got {v!r}")

class MintJobResult(CamelModel):
    """Result stored on a completed mint job."""
    success: bool = True
    metadata_uri: str
    asset_id: str
    predicted_asset_id: str
    tx_signature: str
    proof_record_id: str

class MintJob(CamelModel):
    """A job as stored in the queue."""
    job_id: str
    payload: MintJobPayload
    state: JobState = JobState.WAITING
    progress: int = Field(default=0, ge=0, le=100)
    attempts_made: int = 0
    result: Optional[Dict[str, Any]] = None
    failed_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

class EnqueueResponse(CamelModel):
    job_id: str

class JobStatusResponse(CamelModel):
    """Response of the job status polling endpoint."""
    job_id: str
    state: JobState
    progress: int = 0
    attempts_made: int = 0
    result: Optional[Dict[str, Any]] = None
    failed_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
