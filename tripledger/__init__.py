"""
Trip ledger backend.

A FastAPI service for tracking trip expenses: users group dated expenses under
named trips and may attach one receipt file per expense, stored in a private
S3-compatible bucket and served through time-limited signed URLs.
"""
