from datetime import timedelta

import pytest

from proofmint.core.errors import (
    DuplicateTransactionError, FeeTooHighError, InsufficientTransferError, MissingFieldsError,
    ProofNotFoundError, SentinelMismatchError, SignerMismatchError, TransactionFailedError,
    TransactionNotFoundError, ValidationError,
)
from proofmint.core.ledger import LedgerTransaction
from proofmint.services.purchase import PurchaseVerifier
from tests.conftest import new_address

PRICE = 1_000_000
FEE = 5_000

@pytest.fixture
def seller():
    return new_address()

@pytest.fixture
def buyer():
    return new_address()

@pytest.fixture
def paid_proof(proofs, seller):
    return proofs.add(original_hash="aa" * 32, owner_wallet=seller, price_lamports=PRICE)

@pytest.fixture
def free_proof(proofs, seller):
    return proofs.add(original_hash="bb" * 32, owner_wallet=seller, price_lamports=0)

@pytest.fixture
def verifier(proofs, purchases, ledger, clock):
    return PurchaseVerifier(proofs, purchases, ledger, clock=clock)

def payment(signature, buyer, seller, amount, fee=FEE, err=None):
    return LedgerTransaction(
        signature=signature,
        account_keys=[buyer, seller, "11111111111111111111111111111111"],
        pre_balances=[10_000_000_000, 2_000_000, 1],
        post_balances=[10_000_000_000 - amount - fee, 2_000_000 + amount, 1],
        err=err,
    )

@pytest.mark.parametrize("args", [
    (None, "wallet", "sig"),
    ("proof", "", "sig"),
    ("proof", "wallet", None),
])
def test_missing_fields(verifier, args):
    with pytest.raises(MissingFieldsError):
        verifier.verify(*args)

def test_unknown_proof(verifier, buyer):
    with pytest.raises(ProofNotFoundError):
        verifier.verify("does-not-exist", buyer, "sig")

def test_invalid_buyer_address(verifier, paid_proof):
    with pytest.raises(ValidationError):
        verifier.verify(paid_proof.id, "not a wallet", "sig")

def test_free_content_with_sentinel(verifier, free_proof, buyer, clock, ledger):
    purchase = verifier.verify(free_proof.id, buyer, "free_1700000000000")

    assert purchase.amount_lamports == 0
    assert purchase.seller_wallet == free_proof.owner_wallet
    assert purchase.download_count == 0
    assert purchase.download_expires_at == clock.now + timedelta(hours=24)
    assert len(purchase.download_token) == 64

def test_free_content_never_touches_ledger(verifier, free_proof, buyer, ledger):
    ledger.get_transaction = lambda signature: pytest.fail("ledger queried for free content")
    verifier.verify(free_proof.id, buyer, "free_1")

def test_sentinel_on_paid_content_is_rejected(verifier, paid_proof, buyer):
    with pytest.raises(SentinelMismatchError):
        verifier.verify(paid_proof.id, buyer, "free_1700000000000")

def test_real_signature_on_free_content_is_rejected(verifier, free_proof, buyer):
    with pytest.raises(SentinelMismatchError):
        verifier.verify(free_proof.id, buyer, "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnb")

def test_paid_purchase(verifier, paid_proof, buyer, seller, ledger, purchases):
    ledger.transactions["tx1"] = payment("tx1", buyer, seller, PRICE)

    purchase = verifier.verify(paid_proof.id, buyer, "tx1")

    assert purchase.amount_lamports == PRICE
    assert purchase.buyer_wallet == buyer
    assert purchase.proof_record_id == paid_proof.id
    assert purchases.get_by_token(purchase.download_token).id == purchase.id

def test_overpayment_is_accepted(verifier, paid_proof, buyer, seller, ledger):
    ledger.transactions["tx1"] = payment("tx1", buyer, seller, PRICE * 2)
    assert verifier.verify(paid_proof.id, buyer, "tx1").amount_lamports == PRICE

def test_unknown_transaction(verifier, paid_proof, buyer):
    with pytest.raises(TransactionNotFoundError):
        verifier.verify(paid_proof.id, buyer, "missing")

def test_failed_transaction(verifier, paid_proof, buyer, seller, ledger):
    ledger.transactions["tx1"] = payment("tx1", buyer, seller, PRICE, err={"InstructionError": [0, "Custom"]})
    with pytest.raises(TransactionFailedError):
        verifier.verify(paid_proof.id, buyer, "tx1")

def test_signer_must_be_buyer(verifier, paid_proof, buyer, seller, ledger):
    someone_else = new_address()
    ledger.transactions["tx1"] = payment("tx1", someone_else, seller, PRICE)
    with pytest.raises(SignerMismatchError) as exc_info:
        verifier.verify(paid_proof.id, buyer, "tx1")
    assert exc_info.value.status_code == 403

def test_insufficient_transfer(verifier, paid_proof, buyer, seller, ledger):
    ledger.transactions["tx1"] = payment("tx1", buyer, seller, PRICE - 1)
    with pytest.raises(InsufficientTransferError):
        verifier.verify(paid_proof.id, buyer, "tx1")

def test_seller_absent_from_transaction(verifier, paid_proof, buyer, ledger):
    ledger.transactions["tx1"] = payment("tx1", buyer, new_address(), PRICE)
    with pytest.raises(InsufficientTransferError):
        verifier.verify(paid_proof.id, buyer, "tx1")

def test_self_purchase_within_fee_ceiling(verifier, paid_proof, seller, ledger):
    ledger.transactions["tx1"] = LedgerTransaction(
        signature="tx1", account_keys=[seller], pre_balances=[1_000_000_000], post_balances=[1_000_000_000 - FEE],
    )
    purchase = verifier.verify(paid_proof.id, seller, "tx1")
    assert purchase.amount_lamports == 0

def test_self_purchase_fee_too_high(verifier, paid_proof, seller, ledger):
    ledger.transactions["tx1"] = LedgerTransaction(
        signature="tx1", account_keys=[seller], pre_balances=[1_000_000_000], post_balances=[1_000_000_000 - 10_000_001],
    )
    with pytest.raises(FeeTooHighError):
        verifier.verify(paid_proof.id, seller, "tx1")

def test_duplicate_transaction(verifier, paid_proof, buyer, seller, ledger, purchases):
    ledger.transactions["tx1"] = payment("tx1", buyer, seller, PRICE)
    verifier.verify(paid_proof.id, buyer, "tx1")

    with pytest.raises(DuplicateTransactionError) as exc_info:
        verifier.verify(paid_proof.id, buyer, "tx1")
    assert exc_info.value.status_code == 409
    assert len(purchases.rows) == 1

def test_duplicate_detected_at_insert(verifier, paid_proof, buyer, seller, ledger, purchases, monkeypatch):
    ledger.transactions["tx1"] = payment("tx1", buyer, seller, PRICE)
    verifier.verify(paid_proof.id, buyer, "tx1")
    # A concurrent request that passed the pre-check still loses on the unique constraint.
    monkeypatch.setattr(purchases, "exists", lambda signature: False)

    with pytest.raises(DuplicateTransactionError):
        verifier.verify(paid_proof.id, buyer, "tx1")
    assert len(purchases.rows) == 1

def test_duplicate_free_sentinel(verifier, free_proof, buyer):
    verifier.verify(free_proof.id, buyer, "free_1")
    with pytest.raises(DuplicateTransactionError):
        verifier.verify(free_proof.id, buyer, "free_1")

def test_check_purchase_returns_latest(verifier, free_proof, buyer):
    assert verifier.check_purchase(free_proof.id, buyer) is None

    verifier.verify(free_proof.id, buyer, "free_1")
    latest = verifier.verify(free_proof.id, buyer, "free_2")

    assert verifier.check_purchase(free_proof.id, buyer).download_token == latest.download_token

def test_check_purchase_requires_parameters(verifier):
    with pytest.raises(MissingFieldsError):
        verifier.check_purchase("", "wallet")
