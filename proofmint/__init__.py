"""
ProofMint - Media Authenticity Notarization Service

Turns verified uploads into immutable, publicly-resolvable proof records on a
public ledger and gates access to the original file behind verified purchases.
"""

__version__ = "1.0.0"
__author__ = "ProofMint Team"
__description__ = "Media authenticity proof issuance and purchase fulfillment"
