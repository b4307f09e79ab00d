"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON logging
    errors          — exception hierarchy & handlers
    middleware      — request id & access logging
    health          — health check aggregation
    database        — async SQLAlchemy engine (PostgreSQL / SQLite)
    locks           — ref-counted per-key asyncio locks
"""
