"""
Record Consumer - Store Worker
==============================

큐에서 딜리버리를 받아 저장소에 쓰고 캐시에 미러링하는 백그라운드 워커

딜리버리 하나의 상태 전이:
1. 수신 (한 건을 끝까지 처리한 뒤 다음 건 수신)
2. 본문 디코딩        실패 -> nack(requeue=False)
3. 타입 변환 + INSERT  실패 -> nack(requeue=False)
4. 캐시 미러링        실패 -> 로그만 (ack에 영향 없음)
5. ack

저장소 쓰기만이 ack 여부를 결정한다.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from src.common.broker_channel import BrokerChannel, Delivery
from src.common.errors import BrokerError, MalformedRecordError, PayloadDecodeError
from src.common.pipeline_config import get_config
from src.ingestor.record_encoder import decode_payload
from src.storage.postgres_writer import PersistedRow

logger = logging.getLogger(__name__)


class DeliveryOutcome(Enum):
    """딜리버리 정산 결과"""
    ACKED = "acked"
    REJECTED_DECODE = "rejected_decode"
    REJECTED_INVALID = "rejected_invalid"
    REJECTED_STORE = "rejected_store"

    @property
    def acked(self) -> bool:
        return self is DeliveryOutcome.ACKED


@dataclass
class ConsumerStats:
    """컨슈머 통계"""
    messages_consumed: int = 0
    messages_acked: int = 0
    rejected_decode: int = 0
    rejected_invalid: int = 0
    rejected_store: int = 0
    cache_failures: int = 0
    settle_failures: int = 0
    total_processing_time_ms: float = 0.0
    start_time: float = field(default_factory=time.time)

    @property
    def messages_rejected(self) -> int:
        return self.rejected_decode + self.rejected_invalid + self.rejected_store

    @property
    def success_rate(self) -> float:
        return self.messages_acked / self.messages_consumed if self.messages_consumed > 0 else 0

    @property
    def messages_per_second(self) -> float:
        elapsed = time.time() - self.start_time
        return self.messages_consumed / elapsed if elapsed > 0 else 0

    def record(self, outcome: DeliveryOutcome, processing_time_ms: float) -> None:
        self.messages_consumed += 1
        self.total_processing_time_ms += processing_time_ms
        if outcome is DeliveryOutcome.ACKED:
            self.messages_acked += 1
        elif outcome is DeliveryOutcome.REJECTED_DECODE:
            self.rejected_decode += 1
        elif outcome is DeliveryOutcome.REJECTED_INVALID:
            self.rejected_invalid += 1
        else:
            self.rejected_store += 1

    def __str__(self) -> str:
        return (
            f"ConsumerStats("
            f"consumed={self.messages_consumed:,}, "
            f"acked={self.messages_acked:,}, "
            f"rejected={self.messages_rejected:,}, "
            f"cache_failed={self.cache_failures:,}, "
            f"rate={self.success_rate:.1%}, "
            f"mps={self.messages_per_second:.1f})"
        )


class RecordConsumer:
    """
    큐 -> PostgreSQL + Redis 저장 워커

    store: insert(PersistedRow)를 가진 저장소 (PostgresWriter)
    cache: set(key, value, ttl)을 가진 캐시 (RecordCache)
    worker_count: 순차 처리 루프 수 (기본 1)
    """

    def __init__(
        self,
        channel: BrokerChannel,
        store: Any,
        cache: Any,
        topic: Optional[str] = None,
        cache_ttl: Optional[int] = None,
        worker_count: Optional[int] = None,
    ):
        config = get_config()

        self.channel = channel
        self.store = store
        self.cache = cache
        self.topic = topic or config.topics.csv_rows
        self.cache_ttl = config.redis.ttl_seconds if cache_ttl is None else cache_ttl
        self.worker_count = config.consumer.worker_count if worker_count is None else worker_count

        if self.worker_count < 1:
            raise ValueError(f"worker_count must be at least 1, got {self.worker_count}")

        self._running = False
        self._processed = 0
        self.stats = ConsumerStats()

        logger.info(
            f"RecordConsumer initialized: "
            f"topic={self.topic}, "
            f"workers={self.worker_count}, "
            f"cache_ttl={self.cache_ttl}s"
        )

    @property
    def running(self) -> bool:
        return self._running

    async def handle_delivery(self, delivery: Delivery) -> DeliveryOutcome:
        """딜리버리 하나를 끝까지 처리하고 정산"""
        start_time = time.time()
        try:
            outcome = await self._process(delivery)
        except Exception as e:
            logger.error(f"Unexpected error processing message @{delivery.offset}: {e}", exc_info=True)
            outcome = DeliveryOutcome.REJECTED_INVALID

        if outcome.acked:
            await self._settle(self.channel.ack(delivery), delivery, "acknowledge")
        else:
            await self._settle(self.channel.nack(delivery, requeue=False), delivery, "nack")

        self.stats.record(outcome, (time.time() - start_time) * 1000)
        return outcome

    async def _process(self, delivery: Delivery) -> DeliveryOutcome:
        # 1. 본문 디코딩
        try:
            fields, raw_json = decode_payload(delivery.body)
        except PayloadDecodeError as e:
            logger.error(f"Failed to process message @{delivery.offset}: {e}")
            return DeliveryOutcome.REJECTED_DECODE

        # 2. 타입 변환
        try:
            row = PersistedRow.from_fields(fields)
        except MalformedRecordError as e:
            logger.error(f"Failed to process message @{delivery.offset}: {e}")
            return DeliveryOutcome.REJECTED_INVALID

        # 3. 저장
        try:
            await self.store.insert(row)
        except Exception as e:
            logger.error(f"Failed to insert data into PostgreSQL (id={row.id}): {e}")
            return DeliveryOutcome.REJECTED_STORE

        # 4. 캐시 (실패해도 ack)
        try:
            await self.cache.set(row.id, raw_json, self.cache_ttl)
        except Exception as e:
            self.stats.cache_failures += 1
            logger.warning(f"Failed to set key-value pair (id={row.id}): {e}")

        return DeliveryOutcome.ACKED

    async def _settle(self, settlement, delivery: Delivery, action: str) -> None:
        """ack/nack 실행 (실패는 로그만)"""
        try:
            await settlement
        except BrokerError as e:
            self.stats.settle_failures += 1
            logger.error(f"Failed to {action} message @{delivery.offset}: {e}")

    async def run(
        self,
        max_messages: Optional[int] = None,
        callback: Optional[Callable[[DeliveryOutcome], Any]] = None,
    ) -> None:
        """
        워커 실행 (메인 루프)

        Args:
            max_messages: 최대 처리 메시지 수 (전체 워커 합계)
            callback: 딜리버리 정산 후 콜백
        """
        await self.channel.declare_queue(self.topic)

        self._running = True
        self._processed = 0
        self.stats = ConsumerStats()

        logger.info(f"Starting consumer loop ({self.worker_count} worker(s))...")

        try:
            await asyncio.gather(*(
                self._worker_loop(worker_id, max_messages, callback)
                for worker_id in range(self.worker_count)
            ))
        finally:
            self._running = False
            logger.info(f"Consumer loop ended. {self.stats}")

    async def _worker_loop(
        self,
        worker_id: int,
        max_messages: Optional[int],
        callback: Optional[Callable[[DeliveryOutcome], Any]],
    ) -> None:
        deliveries = self.channel.consume(self.topic)

        try:
            async for delivery in deliveries:
                if not self._running:
                    break

                try:
                    outcome = await self.handle_delivery(delivery)
                    if callback:
                        callback(outcome)
                except Exception as e:
                    logger.error(f"Error processing delivery: {e}", exc_info=True)

                self._processed += 1

                # 진행 상황 로깅
                if self._processed % 100 == 0:
                    logger.info(f"Worker {worker_id}: {self.stats}")

                # 최대 처리 수 확인
                if max_messages and self._processed >= max_messages:
                    logger.info(f"Reached max messages: {max_messages}")
                    self._running = False
                    break

        except asyncio.CancelledError:
            logger.info(f"Worker {worker_id} loop cancelled")
            raise
        finally:
            await deliveries.aclose()

    def stop(self) -> None:
        """루프 종료 요청 (다음 딜리버리 수신 후 종료)"""
        self._running = False

    def get_stats(self) -> dict:
        """현재 통계 반환"""
        return {
            'consumed': self.stats.messages_consumed,
            'acked': self.stats.messages_acked,
            'rejected': self.stats.messages_rejected,
            'rejected_decode': self.stats.rejected_decode,
            'rejected_invalid': self.stats.rejected_invalid,
            'rejected_store': self.stats.rejected_store,
            'cache_failures': self.stats.cache_failures,
            'success_rate': self.stats.success_rate,
            'messages_per_second': self.stats.messages_per_second,
        }
