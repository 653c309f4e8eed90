"""
Proof metadata construction and publication to durable storage.
"""

import json
import structlog
from datetime import datetime
from typing import Any, Dict, Optional

from proofmint import config
from proofmint.core.storage import DurableStorageClient
from proofmint.core.utils import sha256_hex, short_hash, utcnow
from proofmint.models.jobs import MintJobPayload

logger = structlog.get_logger()

PROOF_DESCRIPTION = "Media authenticity proof"

def proof_name(original_hash: str) -> str:
    return f"{config.APP_NAME} Proof #{short_hash(original_hash)}"

def build_proof_metadata(payload: MintJobPayload, predicted_asset_id: str,
                         created_at: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Assemble the public metadata document for one proof.

    The certificate chain itself is not published; its SHA-256 is, so anyone
    holding the chain can check it against the proof.
    """
    created_at = created_at or utcnow()
    document = {
        "name": proof_name(payload.original_hash),
        "symbol": config.PROOF_SYMBOL,
        "description": f"{PROOF_DESCRIPTION} verified by {config.APP_NAME}",
        "target_asset_id": predicted_asset_id,
        "attributes": [
            {"trait_type": "original_hash", "value": payload.original_hash},
            {"trait_type": "root_signer", "value": payload.root_signer},
            {"trait_type": "root_cert_chain_sha256", "value": sha256_hex(payload.root_cert_chain)},
            {"trait_type": "created_at", "value": created_at.isoformat()},
        ],
    }
    if payload.thumbnail_uri:
        document["image"] = payload.thumbnail_uri
    return document

def canonical_json(document: Dict[str, Any]) -> bytes:
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

class MetadataPublisher:
    """Publishes proof metadata; republishing on retry just creates another immutable copy."""

    def __init__(self, durable_storage: DurableStorageClient):
        self.durable_storage = durable_storage

    def publish(self, payload: MintJobPayload, predicted_asset_id: str) -> str:
        document = build_proof_metadata(payload, predicted_asset_id)
        uri = self.durable_storage.upload(
            canonical_json(document),
            content_type="application/json",
            tags={
                "App-Name": config.APP_NAME,
                "original_hash": payload.original_hash,
            },
        )
        logger.info("Proof metadata published",
                    original_hash=payload.original_hash, metadata_uri=uri,
                    target_asset_id=predicted_asset_id)
        return uri
