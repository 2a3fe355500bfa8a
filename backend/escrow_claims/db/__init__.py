"""Database models and utilities for the claim ledger."""
from .models import ClaimRecord, ClaimLedger, get_session_maker, Base

__all__ = ['ClaimRecord', 'ClaimLedger', 'get_session_maker', 'Base']
