"""
DataPraktis - Engagement & Escrow Settlement Engine
====================================================

Milestone escrow, review workflow, auto-release and analyst payouts
for the DataPraktis analyst marketplace.
"""

__version__ = "0.1.0"
