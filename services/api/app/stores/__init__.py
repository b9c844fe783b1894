"""Data stores for persistence and caching.

Stores handle:
- PostgreSQL: DB session, repositories, ORM operations
- Local disk: receipt images
- Redis: generic-name pins, reprocess locks, TTL policies

No business/ranking logic in stores - that belongs in services.
"""
