"""
Pydantic models for mint jobs, proof records and purchases.
"""
