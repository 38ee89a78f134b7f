"""
Redis Record Cache
==================

레코드 원본 JSON을 id 키로 미러링 (TTL 고정)
- 권위 있는 저장소가 아님: 없거나 오래된 값은 오류가 아니다
- redis-py 동기 클라이언트를 executor 스레드에서 실행
"""

import asyncio
import logging
from functools import partial
from typing import Any, Optional

import redis

from src.common.errors import CacheError
from src.common.pipeline_config import RedisConfig, get_config

logger = logging.getLogger(__name__)


class RecordCache:
    """Redis 기반 레코드 캐시"""

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        client: Optional[redis.Redis] = None,
    ):
        """
        Args:
            config: Redis 설정
            client: 미리 만든 Redis 클라이언트 (없으면 설정으로 생성)
        """
        self.config = config or get_config().redis
        self.redis_client = client or redis.Redis(
            host=self.config.host,
            port=self.config.port,
            db=self.config.db,
            username=self.config.username,
            password=self.config.password,
            decode_responses=True,
            socket_keepalive=True,
            health_check_interval=30,
        )

        self.sets = 0
        self.failures = 0

    def _key(self, key: str) -> str:
        return f"{self.config.key_prefix}{key}"

    async def _run(self, func, *args, **kwargs) -> Any:
        """블로킹 redis 호출을 executor에서 실행"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """
        키-값 저장 (TTL 초)

        Raises:
            CacheError: 저장 실패
        """
        ttl = self.config.ttl_seconds if ttl is None else ttl
        try:
            await self._run(self.redis_client.set, self._key(key), value, ex=ttl or None)
        except redis.RedisError as e:
            self.failures += 1
            raise CacheError(f"failed to set key-value pair in Redis: {e}") from e

        self.sets += 1

    async def get(self, key: str) -> Optional[str]:
        """
        값 조회 (없으면 None)

        Raises:
            CacheError: 조회 실패
        """
        try:
            return await self._run(self.redis_client.get, self._key(key))
        except redis.RedisError as e:
            raise CacheError(f"failed to get value from Redis: {e}") from e

    def test_connection(self) -> bool:
        """Redis 연결 테스트"""
        try:
            self.redis_client.ping()
            logger.info("Redis cache connected")
            return True
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            return False

    def close(self) -> None:
        try:
            self.redis_client.close()
        except redis.RedisError as e:
            logger.debug(f"Error closing Redis client: {e}")
