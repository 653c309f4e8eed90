"""
Pydantic models for purchases and download tokens.
"""

from datetime import datetime
from typing import Optional

from pydantic import Field

from .jobs import CamelModel

class PurchaseRequest(CamelModel):
    """Payment claim submitted by a buyer. Fields are validated by the verifier."""
    proof_record_id: Optional[str] = None
    buyer_wallet: Optional[str] = None
    tx_signature: Optional[str] = None

class PurchaseResponse(CamelModel):
    success: bool
    purchase_id: Optional[str] = None
    download_token: Optional[str] = None
    error: Optional[str] = None

class PurchaseRecord(CamelModel):
    """A recorded, verified payment and its download grant."""
    id: str
    proof_record_id: str
    buyer_wallet: str
    seller_wallet: str
    tx_signature: str
    amount_lamports: int = Field(default=0, ge=0)
    download_token: str
    download_expires_at: datetime
    download_count: int = Field(default=0, ge=0)
    created_at: Optional[datetime] = None

class PurchaseCheckResponse(CamelModel):
    purchased: bool
    download_token: Optional[str] = None

class PurchasedContent(CamelModel):
    """One entry of a buyer's purchase history."""
    purchase_id: str
    proof_record_id: str
    original_hash: str
    title: Optional[str] = None
    asset_id: Optional[str] = None
    download_token: str
    purchased_at: Optional[datetime] = None
