"""
Pydantic models for proof records.
"""

from datetime import datetime
from typing import Optional

from pydantic import Field

from .jobs import CamelModel

class ProofRecordBase(CamelModel):
    """Fields written by the mint processor's persist step."""
    original_hash: str = Field(..., description="SHA-256 of the original media file")
    metadata_uri: str = Field(..., description="Permanent URI of the published proof metadata")
    asset_id: str = Field(..., description="Ledger asset identifier actually assigned by the mint")
    owner_wallet: str = Field(..., description="Wallet that owns the proof")
    file_extension: str = Field(default="bin", description="Extension of the original file")
    price_lamports: int = Field(default=0, ge=0)
    title: Optional[str] = None
    description: Optional[str] = None
    is_public: bool = True

class ProofRecord(ProofRecordBase):
    """Complete proof record."""
    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_free(self) -> bool:
        return self.price_lamports == 0
