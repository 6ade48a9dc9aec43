"""Offline-tolerant swipe feed: pagination, local deck state and outbox sync."""
