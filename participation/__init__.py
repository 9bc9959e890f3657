"""
Participation Ledger for BRITE POOL members

This module provides:
- Self-reported participation entries (0 < hours <= 24) in fixed categories
- One-way review lifecycle: pending → approved / rejected
- Equity units derived from approved hours (1 per 10 hours, truncated)
- Optional idempotency keys for safe client retries
- In-memory and SQLAlchemy storage backends
"""

from .models import (
    EntryStatus,
    ParticipationCategory,
    ParticipationEntry,
    MemberParticipationSummary,
    Member,
    MemberRole,
)
from .service import ParticipationLedger

__all__ = [
    "EntryStatus",
    "ParticipationCategory",
    "ParticipationEntry",
    "MemberParticipationSummary",
    "Member",
    "MemberRole",
    "ParticipationLedger",
]
