"""
Proof issuance and purchase fulfillment services.
"""
