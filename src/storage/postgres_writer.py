"""
PostgreSQL Writer - CSV Row Storage
===================================

레코드를 csv_data 테이블에 저장 (시스템 오브 레코드)
- 비동기 연결 풀 (asyncpg)
- 저장 경계에서 명시적 타입 변환 (PersistedRow)
- 같은 id는 마지막 쓰기가 이김 (UPSERT)
- 필터/페이지 조회
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import asyncpg
from asyncpg import Pool

from src.common.errors import MalformedRecordError, StoreError
from src.common.pipeline_config import PostgresConfig, get_config

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# 부모 참조 필드의 "없음" 값
NULL_SENTINEL = "-1"

COLUMNS = (
    "id",
    "first_name",
    "last_name",
    "email_address",
    "created_at",
    "deleted_at",
    "merged_at",
    "parent_user_id",
)

TIMESTAMP_COLUMNS = ("created_at", "deleted_at", "merged_at")

# 조회 API에서 허용하는 필터
FILTER_COLUMNS = (
    "id",
    "first_name",
    "last_name",
    "email_address",
    "created_at",
    "deleted_at",
    "parent_user_id",
)


def convert_epoch_millis(value: Optional[str]) -> Optional[datetime]:
    """
    epoch 밀리초 문자열 -> UTC datetime (초 단위 절삭)

    "-1", 숫자가 아닌 값, None이면 None
    """
    if value is None:
        return None

    try:
        millis = float(value)
    except (TypeError, ValueError):
        return None

    if math.isnan(millis) or math.isinf(millis) or millis == -1:
        return None

    try:
        seconds = int(int(millis) / 1000)
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return None


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(TIMESTAMP_FORMAT) if value else None


def parse_filter_timestamp(value: str) -> datetime:
    """
    조회 필터용 시각 파싱

    "YYYY-MM-DD HH:MM:SS" 또는 epoch 밀리초

    Raises:
        ValueError: 둘 다 아닌 경우
    """
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError:
        pass

    converted = convert_epoch_millis(value)
    if converted is None:
        raise ValueError(f"Invalid timestamp filter: {value!r}")
    return converted


@dataclass
class PersistedRow:
    """저장소 쪽 레코드 (타입 변환 후)"""
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_address: Optional[str] = None
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None
    parent_user_id: Optional[str] = None

    @classmethod
    def from_fields(cls, fields: Mapping[str, Optional[str]]) -> "PersistedRow":
        """
        필드 매핑 -> PersistedRow

        - id 필수
        - 시각 필드: epoch 밀리초 -> datetime, "-1"/숫자 아님 -> None
        - parent_user_id: "-1" -> None

        Raises:
            MalformedRecordError: id가 없거나 비어있음
        """
        record_id = fields.get("id")
        if record_id is None or not str(record_id).strip():
            raise MalformedRecordError("record has no id")

        parent = fields.get("parent_user_id")
        if parent == NULL_SENTINEL:
            parent = None

        return cls(
            id=str(record_id),
            first_name=fields.get("first_name"),
            last_name=fields.get("last_name"),
            email_address=fields.get("email_address"),
            created_at=convert_epoch_millis(fields.get("created_at")),
            deleted_at=convert_epoch_millis(fields.get("deleted_at")),
            merged_at=convert_epoch_millis(fields.get("merged_at")),
            parent_user_id=parent,
        )

    def as_params(self) -> tuple:
        """INSERT 파라미터 순서대로"""
        return (
            self.id,
            self.first_name,
            self.last_name,
            self.email_address,
            self.created_at,
            self.deleted_at,
            self.merged_at,
            self.parent_user_id,
        )

    def to_dict(self) -> dict:
        return row_to_dict({
            'id': self.id,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'email_address': self.email_address,
            'created_at': self.created_at,
            'deleted_at': self.deleted_at,
            'merged_at': self.merged_at,
            'parent_user_id': self.parent_user_id,
        })


def row_to_dict(row: Mapping[str, Any]) -> dict:
    """DB 행 -> JSON 응답용 dict (시각은 포맷 문자열)"""
    result = dict(row)
    for column in TIMESTAMP_COLUMNS:
        if isinstance(result.get(column), datetime):
            result[column] = format_timestamp(result[column])
    return result


def build_select_query(
    filters: Mapping[str, Any],
    limit: int,
    offset: int,
) -> tuple[str, list]:
    """
    조회 쿼리 생성

    허용된 컬럼만 AND 동등 조건으로, 나머지 키는 무시한다.

    Returns:
        (SQL, 파라미터 리스트)
    """
    query = f"SELECT {', '.join(COLUMNS)} FROM csv_data WHERE 1=1"
    args: list = []

    for column in FILTER_COLUMNS:
        value = filters.get(column)
        if value is None or value == "":
            continue

        if column in TIMESTAMP_COLUMNS and not isinstance(value, datetime):
            value = parse_filter_timestamp(str(value))

        args.append(value)
        query += f" AND {column} = ${len(args)}"

    args.extend([limit, offset])
    query += f" ORDER BY id LIMIT ${len(args) - 1} OFFSET ${len(args)}"
    return query, args


@dataclass
class PostgresStats:
    """PostgreSQL 저장 통계"""
    records_upserted: int = 0
    records_failed: int = 0
    queries: int = 0
    total_insert_time_ms: float = 0.0
    start_time: float = field(default_factory=time.time)

    @property
    def records_per_second(self) -> float:
        elapsed = time.time() - self.start_time
        return self.records_upserted / elapsed if elapsed > 0 else 0

    @property
    def average_insert_time_ms(self) -> float:
        return self.total_insert_time_ms / self.records_upserted if self.records_upserted > 0 else 0

    def __str__(self) -> str:
        return (
            f"PostgresStats("
            f"upserted={self.records_upserted:,}, "
            f"failed={self.records_failed:,}, "
            f"queries={self.queries:,}, "
            f"rps={self.records_per_second:.1f})"
        )


class PostgresWriter:
    """
    PostgreSQL 저장기

    - insert: 레코드 한 건 UPSERT (실패 시 StoreError)
    - query: 필터/페이지 조회
    """

    SCHEMA_QUERY = """
        CREATE TABLE IF NOT EXISTS csv_data (
            id TEXT PRIMARY KEY,
            first_name TEXT,
            last_name TEXT,
            email_address TEXT,
            created_at TIMESTAMP,
            deleted_at TIMESTAMP,
            merged_at TIMESTAMP,
            parent_user_id TEXT
        )
    """

    UPSERT_QUERY = """
        INSERT INTO csv_data (
            id, first_name, last_name, email_address,
            created_at, deleted_at, merged_at, parent_user_id
        ) VALUES (
            $1, $2, $3, $4,
            $5, $6, $7, $8
        )
        ON CONFLICT (id) DO UPDATE SET
            first_name = EXCLUDED.first_name,
            last_name = EXCLUDED.last_name,
            email_address = EXCLUDED.email_address,
            created_at = EXCLUDED.created_at,
            deleted_at = EXCLUDED.deleted_at,
            merged_at = EXCLUDED.merged_at,
            parent_user_id = EXCLUDED.parent_user_id
    """

    def __init__(self, config: Optional[PostgresConfig] = None):
        """
        Args:
            config: PostgreSQL 설정
        """
        self.config = config or get_config().postgres

        # 연결 풀
        self._pool: Optional[Pool] = None

        # 통계
        self.stats = PostgresStats()

        logger.info(
            f"PostgresWriter initialized: "
            f"host={self.config.host}, "
            f"db={self.config.database}"
        )

    async def start(self) -> None:
        """연결 풀 시작 + 테이블 보장"""
        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.config.dsn,
                min_size=self.config.min_connections,
                max_size=self.config.max_connections,
                command_timeout=30,
            )
            self.stats = PostgresStats()
            logger.info("PostgreSQL connection pool created")

        except Exception as e:
            logger.error(f"Failed to create PostgreSQL pool: {e}")
            raise StoreError(f"failed to connect to the database: {e}") from e

        await self.ensure_schema()

    async def stop(self) -> None:
        """연결 풀 종료"""
        if self._pool:
            await self._pool.close()
            self._pool = None

        logger.info(f"PostgresWriter stopped. {self.stats}")

    async def __aenter__(self) -> "PostgresWriter":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def _require_pool(self) -> Pool:
        if not self._pool:
            raise StoreError("PostgreSQL pool not initialized")
        return self._pool

    async def ensure_schema(self) -> None:
        """csv_data 테이블이 없으면 생성"""
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(self.SCHEMA_QUERY)
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreError(f"failed to create csv_data table: {e}") from e

    async def insert(self, row: PersistedRow) -> None:
        """
        레코드 한 건 저장

        Raises:
            StoreError: 저장 실패
        """
        pool = self._require_pool()
        start_time = time.time()

        try:
            async with pool.acquire() as conn:
                await conn.execute(self.UPSERT_QUERY, *row.as_params())
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            self.stats.records_failed += 1
            logger.error(f"Error saving record {row.id}: {e}")
            raise StoreError(f"failed to execute SQL statement: {e}") from e

        self.stats.records_upserted += 1
        self.stats.total_insert_time_ms += (time.time() - start_time) * 1000

    async def query(
        self,
        filters: Mapping[str, Any],
        limit: int,
        offset: int,
    ) -> list[dict]:
        """
        필터/페이지 조회

        Raises:
            StoreError: 조회 실패
            ValueError: 잘못된 시각 필터
        """
        pool = self._require_pool()
        sql, args = build_select_query(filters, limit, offset)
        logger.debug(f"Query: {sql} args={args}")

        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(sql, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise StoreError(f"failed to execute SQL statement: {e}") from e

        self.stats.queries += 1
        return [row_to_dict(row) for row in rows]

    async def ping(self) -> bool:
        """연결 확인"""
        if not self._pool:
            return False
        try:
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.warning(f"PostgreSQL ping failed: {e}")
            return False

    def get_stats(self) -> dict:
        """현재 통계 반환"""
        return {
            'records_upserted': self.stats.records_upserted,
            'records_failed': self.stats.records_failed,
            'queries': self.stats.queries,
            'records_per_second': self.stats.records_per_second,
            'average_insert_time_ms': self.stats.average_insert_time_ms,
        }


async def test_postgres_connection(config: Optional[PostgresConfig] = None) -> dict:
    """PostgreSQL 연결 테스트"""
    config = config or get_config().postgres

    result = {
        'connected': False,
        'host': config.host,
        'database': config.database,
        'tables': [],
        'error': None,
    }

    try:
        conn = await asyncpg.connect(dsn=config.dsn)

        tables = await conn.fetch("""
            SELECT tablename FROM pg_tables
            WHERE schemaname = 'public'
        """)
        result['tables'] = [t['tablename'] for t in tables]
        result['connected'] = True

        await conn.close()

    except Exception as e:
        result['error'] = str(e)

    return result
