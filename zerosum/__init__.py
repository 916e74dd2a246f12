"""
ZeroSum - Envelope Budgeting Core

The calculation and synchronization layer of a zero-sum budgeting app:
a pure ledger engine, an optimistic mutation framework with durable
retry, and an offline receipt scan queue.

DESIGN PRINCIPLES:
1. Every dollar has a job: available money always adds up to the accounts
2. Derived numbers are computed, never stored
3. Edits apply locally first and never get lost
4. Fail visibly: problems become diagnostics, notifications or audit events
5. Storage and OCR are swappable
"""

__version__ = "1.0.0"
__author__ = "ZeroSum Team"
