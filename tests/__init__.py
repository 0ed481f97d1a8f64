#!/usr/bin/env python3
"""
Test suite configuration and utilities.

All unit tests run without external services: the orchestrator is exercised
against the in-memory store and transport, the SQL store against in-memory
SQLite, and Redis/RQ pieces against mocks. Tests marked `redis` run the real
RQ worker against TEST_REDIS_URL and are skipped when no server answers.

    # Run all tests
    python -m pytest tests/ -v

    # Skip tests that need Redis
    python -m pytest tests/ -m "not redis"
"""

import os
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy.orm import sessionmaker

from database.database import create_db_engine, make_session_factory, init_schema

TEST_DB_URL = "sqlite:///:memory:"
TEST_REDIS_URL = os.environ.get("TEST_REDIS_URL", "redis://localhost:6379/15")

_redis_available: Optional[bool] = None


def make_test_session_factory() -> sessionmaker:
    """Fresh in-memory SQLite database with the schema created."""
    engine = create_db_engine(TEST_DB_URL)
    init_schema(engine)
    return make_session_factory(engine)


def is_redis_available() -> bool:
    """Check if the test Redis server answers a ping."""
    try:
        conn = Redis.from_url(TEST_REDIS_URL, socket_connect_timeout=1)
        conn.ping()
        conn.close()
        return True
    except RedisError:
        return False


def check_redis_available() -> bool:
    """Cached check for Redis availability."""
    global _redis_available
    if _redis_available is None:
        _redis_available = is_redis_available()
    return _redis_available
