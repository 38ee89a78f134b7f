"""
Storage Module - Store + Cache
==============================

- PostgreSQL: csv_data 테이블 (시스템 오브 레코드)
- Redis: 레코드 원본 JSON 미러 (TTL, 권위 없음)

Components:
- postgres_writer: PersistedRow 변환 + 저장/조회
- redis_cache: 레코드 캐시
"""

from .postgres_writer import (
    PostgresWriter,
    PersistedRow,
    PostgresStats,
    convert_epoch_millis,
    build_select_query,
    test_postgres_connection,
)
from .redis_cache import RecordCache

__all__ = [
    # Writers
    "PostgresWriter",
    "RecordCache",
    # Data classes
    "PersistedRow",
    "PostgresStats",
    # Helpers
    "convert_epoch_millis",
    "build_select_query",
    # Test utilities
    "test_postgres_connection",
]
