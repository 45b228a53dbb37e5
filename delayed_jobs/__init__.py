"""
Delayed Jobs

A database-backed background job queue with version-guarded leases,
priority and scheduled execution, retry with backoff, and lease reclamation
for crashed workers.
"""

__version__ = "1.0.0"
