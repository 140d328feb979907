"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging
    errors      — exception hierarchy & handlers
    middleware  — request logging, correlation IDs
    security    — bearer-token decoding & role gate
    health      — health check aggregation
    database    — async SQLAlchemy engine & sessions
    cache       — shared Redis client
"""
