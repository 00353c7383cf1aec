"""
Harvest Kernel - deterministic farm-year simulation core.

A pure, replayable simulation of one agricultural financial year with:
- Decimal-only ledger arithmetic with exact reversal
- Seeded, bounded risk-event generation
- Validated decisions with same-period undo
- A balance equation checked after every mutation
"""

__version__ = "0.1.0"
