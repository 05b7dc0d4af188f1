"""
Gavel - Auction settlement and consistency engine.

Covers:
- Per-mechanism price and winner computation (13 auction types)
- Idempotent bid admission with optimistic concurrency
- Hierarchical business-rule configuration and violation tracking
- Transactional outbox relay for downstream consumers
"""

__version__ = "0.1.0"
