"""
ATM Bank Simulator

A teaching bank back end with flat-file persistence and an append-only
transaction ledger that supports undo through reversing entries.
"""

__version__ = "1.0.0"
