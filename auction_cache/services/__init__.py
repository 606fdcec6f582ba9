"""Cache, lock, upstream and chain services."""
