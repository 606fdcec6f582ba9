"""
Auction cache service: a Redis-backed cache and coalescing layer in front of
Dune Analytics, plus incremental BidCanceled ingestion from mainnet.
"""

__version__ = "1.0.0"
