"""Delivery of hash changes and deletion notices to subscribers."""
