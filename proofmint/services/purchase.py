"""
Purchase verification.

A buyer claims to have paid for a proof by submitting a ledger transaction
signature. The claim is checked against the ledger itself, never against
client-supplied amounts, before a purchase and its download token are recorded.
"""

import structlog
from datetime import timedelta
from typing import Callable, Optional

from proofmint import config
from proofmint.core.database import ProofStore, PurchaseStore
from proofmint.core.errors import (
    DuplicateTransactionError, FeeTooHighError, InsufficientTransferError, MalformedAddressError,
    MissingFieldsError, ProofNotFoundError, SentinelMismatchError, SignerMismatchError,
    TransactionFailedError, TransactionNotFoundError, ValidationError,
)
from proofmint.core.ledger import LedgerClient, LedgerTransaction, parse_address
from proofmint.core.utils import generate_download_token, is_free_signature, new_record_id, utcnow
from proofmint.models.proofs import ProofRecord
from proofmint.models.purchases import PurchaseRecord

logger = structlog.get_logger()

class PurchaseVerifier:
    """Sole writer of purchase records."""

    def __init__(self, proofs: ProofStore, purchases: PurchaseStore, ledger: LedgerClient,
                 free_prefix: str = config.FREE_SIGNATURE_PREFIX,
                 fee_ceiling: int = config.SELF_PURCHASE_FEE_CEILING,
                 download_ttl: timedelta = timedelta(hours=config.DOWNLOAD_TTL_HOURS),
                 clock: Callable = utcnow):
        self.proofs = proofs
        self.purchases = purchases
        self.ledger = ledger
        self.free_prefix = free_prefix
        self.fee_ceiling = fee_ceiling
        self.download_ttl = download_ttl
        self.clock = clock

    def verify(self, proof_record_id: Optional[str], buyer_wallet: Optional[str],
               tx_signature: Optional[str]) -> PurchaseRecord:
        if not proof_record_id or not buyer_wallet or not tx_signature:
            raise MissingFieldsError()

        log = logger.bind(proof_record_id=proof_record_id, buyer_wallet=buyer_wallet,
                          tx_signature=tx_signature)

        proof = self.proofs.get(proof_record_id)
        if proof is None:
            raise ProofNotFoundError()

        try:
            parse_address(buyer_wallet)
        except MalformedAddressError:
            raise ValidationError("Invalid buyer wallet address")

        free_claim = is_free_signature(tx_signature, self.free_prefix)
        if proof.is_free != free_claim:
            # Sentinel on paid content, or a real payment on free content.
            log.warning("Free signature sentinel mismatch",
                        price_lamports=proof.price_lamports, free_claim=free_claim)
            raise SentinelMismatchError()

        if proof.is_free:
            amount = 0
        else:
            transaction = self._load_transaction(tx_signature)
            amount = self._check_payment(proof, buyer_wallet, transaction)

        if self.purchases.exists(tx_signature):
            log.warning("Transaction already recorded")
            raise DuplicateTransactionError()

        now = self.clock()
        purchase = self.purchases.insert(PurchaseRecord(
            id=new_record_id(),
            proof_record_id=proof.id,
            buyer_wallet=buyer_wallet,
            seller_wallet=proof.owner_wallet,
            tx_signature=tx_signature,
            amount_lamports=amount,
            download_token=generate_download_token(),
            download_expires_at=now + self.download_ttl,
            download_count=0,
        ))
        log.info("Purchase verified", purchase_id=purchase.id, amount_lamports=amount, free=proof.is_free)
        return purchase

    def _load_transaction(self, tx_signature: str) -> LedgerTransaction:
        transaction = self.ledger.get_transaction(tx_signature)
        if transaction is None:
            raise TransactionNotFoundError()
        if not transaction.succeeded:
            logger.warning("Purchase transaction failed on-chain", tx_signature=tx_signature, err=transaction.err)
            raise TransactionFailedError()
        return transaction

    def _check_payment(self, proof: ProofRecord, buyer_wallet: str, transaction: LedgerTransaction) -> int:
        """Validate balance movements and return the amount to record."""
        if transaction.first_signer != buyer_wallet:
            logger.warning("Purchase signer mismatch",
                           tx_signature=transaction.signature, first_signer=transaction.first_signer,
                           buyer_wallet=buyer_wallet)
            raise SignerMismatchError()

        seller_wallet = proof.owner_wallet
        if buyer_wallet == seller_wallet:
            # Owner buying their own content: the only debit should be network fees.
            fee = -transaction.balance_change(buyer_wallet)
            if fee > self.fee_ceiling:
                logger.warning("Self-purchase fee too high",
                               tx_signature=transaction.signature, fee=fee, fee_ceiling=self.fee_ceiling)
                raise FeeTooHighError()
            return 0

        seller_change = transaction.balance_change(seller_wallet)
        if seller_change < proof.price_lamports:
            logger.warning("Insufficient transfer to seller",
                           tx_signature=transaction.signature, seller_change=seller_change,
                           price_lamports=proof.price_lamports)
            raise InsufficientTransferError()
        return proof.price_lamports

    def check_purchase(self, proof_record_id: str, buyer_wallet: str) -> Optional[PurchaseRecord]:
        """Most recent purchase of a proof by a wallet, if any."""
        if not proof_record_id or not buyer_wallet:
            raise MissingFieldsError("Missing required parameters")
        return self.purchases.latest_for_buyer(proof_record_id, buyer_wallet)
