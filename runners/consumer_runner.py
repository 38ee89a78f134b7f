#!/usr/bin/env python3
"""
Consumer Runner - Record Consumer 실행기
========================================

csv.rows 토픽의 레코드를 PostgreSQL에 저장하고 Redis에 미러링

Usage:
    # 컨슈머 실행
    python runners/consumer_runner.py

    # 테스트 모드
    python runners/consumer_runner.py --max-messages 100

    # 연결 테스트
    python runners/consumer_runner.py --test-connection
"""

import asyncio
import argparse
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Optional

# 프로젝트 루트를 path에 추가
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from dotenv import load_dotenv

load_dotenv()

from src.common.broker_channel import BrokerChannel
from src.common.pipeline_config import get_config
from src.consumer.record_consumer import DeliveryOutcome, RecordConsumer
from src.storage.postgres_writer import PostgresWriter, test_postgres_connection
from src.storage.redis_cache import RecordCache

# 로깅 설정
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
)
logger = logging.getLogger(__name__)


class ConsumerRunner:
    """Record Consumer 실행기"""

    def __init__(self, worker_count: Optional[int] = None):
        self.worker_count = worker_count
        self._consumer: Optional[RecordConsumer] = None

        # 종료 시그널 핸들러
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """종료 시그널 처리"""
        logger.info(f"Received signal {signum}, shutting down...")
        if self._consumer:
            self._consumer.stop()

    async def run(self, max_messages: Optional[int] = None) -> None:
        """
        컨슈머 실행

        Args:
            max_messages: 최대 처리 메시지 수
        """
        start_time = time.time()
        acked_count = 0

        def on_settled(outcome: DeliveryOutcome):
            nonlocal acked_count
            if outcome.acked:
                acked_count += 1

            if acked_count and acked_count % 100 == 0:
                elapsed = time.time() - start_time
                logger.info(
                    f"[Progress] Stored: {acked_count:,} | "
                    f"Rate: {acked_count/elapsed:.1f} msg/s"
                )

        config = get_config()
        logger.info(f"Connecting to Kafka: {config.kafka.bootstrap_servers}")

        cache = RecordCache()
        try:
            async with BrokerChannel() as channel, PostgresWriter() as store:
                self._consumer = RecordConsumer(
                    channel,
                    store,
                    cache,
                    worker_count=self.worker_count,
                )
                await self._consumer.run(max_messages=max_messages, callback=on_settled)
        finally:
            cache.close()

        # 최종 통계 출력
        stats = self._consumer.get_stats()
        elapsed = time.time() - start_time

        logger.info("=" * 60)
        logger.info("Record consumer stopped!")
        logger.info(f"Total time: {elapsed:.1f}s")
        logger.info(f"Messages consumed: {stats['consumed']:,}")
        logger.info(f"Messages acked: {stats['acked']:,}")
        logger.info(f"Rejected (decode): {stats['rejected_decode']:,}")
        logger.info(f"Rejected (invalid): {stats['rejected_invalid']:,}")
        logger.info(f"Rejected (store): {stats['rejected_store']:,}")
        logger.info(f"Cache failures: {stats['cache_failures']:,}")
        logger.info(f"Success rate: {stats['success_rate']:.1%}")
        logger.info("=" * 60)


async def run_connection_test() -> bool:
    """PostgreSQL / Redis 연결 테스트"""
    logger.info("Testing connections...")

    pg = await test_postgres_connection()
    if pg['connected']:
        logger.info(f"PostgreSQL OK: {pg['host']}/{pg['database']} tables={pg['tables']}")
    else:
        logger.error(f"PostgreSQL FAILED: {pg['error']}")

    cache = RecordCache()
    redis_ok = cache.test_connection()
    cache.close()

    return pg['connected'] and redis_ok


def main():
    parser = argparse.ArgumentParser(description="CSV record consumer")
    parser.add_argument("--max-messages", type=int, default=None, help="Stop after N messages")
    parser.add_argument("--workers", type=int, default=None, help="Sequential worker loops (default: 1)")
    parser.add_argument("--test-connection", action="store_true", help="Test store/cache connections and exit")
    args = parser.parse_args()

    if args.test_connection:
        ok = asyncio.run(run_connection_test())
        sys.exit(0 if ok else 1)

    runner = ConsumerRunner(worker_count=args.workers)
    asyncio.run(runner.run(max_messages=args.max_messages))


if __name__ == "__main__":
    main()
