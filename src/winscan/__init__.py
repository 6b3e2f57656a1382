"""Polymarket winner scanner.

Discovers trading accounts on the public Polymarket data API, derives
performance metrics, and ranks them by a composite score.
"""

__version__ = "0.1.0"
