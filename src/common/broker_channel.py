"""
Broker Channel - Kafka Queue Channel
====================================

프로세스가 소유하는 단일 브로커 채널 (aiokafka 기반)
- declare_queue: 토픽 멱등 생성
- publish: 연결 확인(죽었으면 재연결) 후 fire-and-forget 전송
- consume: 수동 확인(manual ack) 딜리버리 스트림
- ack / nack: 딜리버리 정산

큐 의미론 매핑:
- ack              -> 해당 오프셋 + 1 커밋
- nack(requeue=F)  -> 오프셋 커밋 (메시지는 활성 큐에서 영구 제거)
- nack(requeue=T)  -> 파티션을 해당 오프셋으로 seek (재전달)

전역 싱글턴이 아니라 생성자로 주입되는 객체.
프로듀서 슬롯은 하나이며, 죽은 프로듀서는 다음 발행 때 교체된다.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import (
    KafkaConnectionError,
    KafkaError,
    KafkaTimeoutError,
    TopicAlreadyExistsError,
)

from src.common.errors import BrokerConnectionError, BrokerError
from src.common.pipeline_config import (
    ConsumerConfig,
    KafkaConfig,
    ProducerConfig,
    TopicConfig,
    get_config,
)

logger = logging.getLogger(__name__)

# 이 에러가 나면 프로듀서를 죽은 것으로 보고 다음 발행 때 교체
_TRANSPORT_ERRORS = (KafkaConnectionError, KafkaTimeoutError)


@dataclass
class Delivery:
    """브로커가 보유한 메시지 하나 (정산 전)"""
    topic: str
    partition: int
    offset: int
    body: bytes
    key: Optional[bytes] = None
    timestamp: Optional[int] = None
    consumer: Any = field(default=None, repr=False, compare=False)

    @property
    def topic_partition(self) -> TopicPartition:
        return TopicPartition(self.topic, self.partition)


@dataclass
class ChannelStats:
    """채널 통계"""
    messages_published: int = 0
    publish_failures: int = 0
    delivery_failures: int = 0
    deliveries_received: int = 0
    acks: int = 0
    nacks: int = 0
    requeues: int = 0
    connections: int = 0
    start_time: float = field(default_factory=time.time)

    def __str__(self) -> str:
        return (
            f"ChannelStats(published={self.messages_published:,}, "
            f"publish_failed={self.publish_failures:,}, "
            f"received={self.deliveries_received:,}, "
            f"acks={self.acks:,}, nacks={self.nacks:,}, "
            f"connections={self.connections})"
        )


class BrokerChannel:
    """
    Kafka 브로커 채널

    발행자(IngestPublisher)와 소비자(RecordConsumer)가 같은 인스턴스를 공유한다.
    factory 인자는 aiokafka 클라이언트 생성 함수 (테스트에서 교체).
    """

    def __init__(
        self,
        kafka_config: Optional[KafkaConfig] = None,
        producer_config: Optional[ProducerConfig] = None,
        consumer_config: Optional[ConsumerConfig] = None,
        topic_config: Optional[TopicConfig] = None,
        producer_factory: Optional[Callable[..., Any]] = None,
        consumer_factory: Optional[Callable[..., Any]] = None,
        admin_factory: Optional[Callable[..., Any]] = None,
    ):
        config = get_config()

        self.kafka_config = kafka_config or config.kafka
        self.producer_config = producer_config or config.producer
        self.consumer_config = consumer_config or config.consumer
        self.topic_config = topic_config or config.topics

        self._producer_factory = producer_factory or AIOKafkaProducer
        self._consumer_factory = consumer_factory or AIOKafkaConsumer
        self._admin_factory = admin_factory or AIOKafkaAdminClient

        # 프로듀서 슬롯 (replace-if-dead)
        self._producer: Optional[Any] = None
        self._producer_dead = False
        self._lock = asyncio.Lock()

        self._consumers: list[Any] = []
        self.stats = ChannelStats()

        logger.info(f"BrokerChannel initialized: {self.kafka_config.bootstrap_servers}")

    @property
    def is_connected(self) -> bool:
        """프로듀서가 살아있는지"""
        return self._producer is not None and not self._producer_dead

    def mark_dead(self) -> None:
        """현재 프로듀서를 죽은 것으로 표시 (다음 발행 때 교체)"""
        if self._producer is not None and not self._producer_dead:
            logger.warning("Broker producer marked dead, will reconnect on next publish")
        self._producer_dead = True

    async def ensure_connected(self) -> Any:
        """
        살아있는 프로듀서 반환, 없거나 죽었으면 새로 연결

        Raises:
            BrokerConnectionError: 연결 실패
        """
        async with self._lock:
            if self.is_connected:
                return self._producer

            if self._producer is not None:
                stale, self._producer = self._producer, None
                try:
                    await stale.stop()
                except Exception as e:
                    logger.debug(f"Error stopping stale producer: {e}")

            producer = self._producer_factory(
                **self.kafka_config.connection_kwargs(),
                acks=self.producer_config.acks,
                linger_ms=self.producer_config.linger_ms,
                request_timeout_ms=self.producer_config.request_timeout_ms,
            )

            try:
                await producer.start()
            except (KafkaError, OSError) as e:
                logger.error(f"Failed to connect to Kafka: {e}")
                try:
                    await producer.stop()
                except Exception as stop_error:
                    logger.debug(f"Error stopping failed producer: {stop_error}")
                raise BrokerConnectionError(f"failed to connect to broker: {e}") from e

            self._producer = producer
            self._producer_dead = False
            self.stats.connections += 1

            logger.info(f"Kafka producer connected (connection #{self.stats.connections})")
            return producer

    async def declare_queue(self, name: str) -> None:
        """
        토픽 멱등 생성 (이미 있으면 성공)

        Raises:
            BrokerError: 생성 실패
        """
        admin = self._admin_factory(**self.kafka_config.connection_kwargs())
        topic = NewTopic(
            name=name,
            num_partitions=self.topic_config.num_partitions,
            replication_factor=self.topic_config.replication_factor,
        )

        try:
            await admin.start()
            try:
                response = await admin.create_topics([topic])
            except TopicAlreadyExistsError:
                logger.debug(f"Queue already exists: {name}")
                return

            for topic_error in getattr(response, 'topic_errors', None) or []:
                topic_name, error_code = topic_error[0], topic_error[1]
                if error_code not in (0, TopicAlreadyExistsError.errno):
                    raise BrokerError(
                        f"failed to declare queue {topic_name}: error code {error_code}"
                    )

            logger.info(f"Queue declared: {name}")

        except KafkaError as e:
            raise BrokerError(f"failed to declare queue {name}: {e}") from e
        finally:
            try:
                await admin.close()
            except Exception as e:
                logger.debug(f"Error closing admin client: {e}")

    async def publish(self, queue: str, payload: bytes, key: Optional[bytes] = None) -> None:
        """
        메시지 발행 (fire-and-forget)

        로컬 실패(연결, 버퍼, 직렬화)만 예외로 알린다.
        브로커 측 손실은 done-callback에서 로그로만 남는다.

        Raises:
            BrokerConnectionError: 연결 실패
            BrokerError: 로컬 발행 실패
        """
        producer = await self.ensure_connected()

        try:
            future = await producer.send(queue, value=payload, key=key)
        except _TRANSPORT_ERRORS as e:
            self.stats.publish_failures += 1
            self.mark_dead()
            raise BrokerConnectionError(f"failed to publish message: {e}") from e
        except KafkaError as e:
            self.stats.publish_failures += 1
            raise BrokerError(f"failed to publish message: {e}") from e

        future.add_done_callback(self._on_delivery)
        self.stats.messages_published += 1

    def _on_delivery(self, future: "asyncio.Future") -> None:
        """브로커 전송 결과 (실패는 로그만)"""
        if future.cancelled():
            return

        error = future.exception()
        if error is None:
            return

        self.stats.delivery_failures += 1
        logger.warning(f"Message delivery failed: {error}")
        if isinstance(error, _TRANSPORT_ERRORS):
            self.mark_dead()

    async def consume(self, queue: str) -> AsyncIterator[Delivery]:
        """
        수동 확인 딜리버리 스트림

        정산(ack/nack)하기 전까지 오프셋은 커밋되지 않는다.

        Raises:
            BrokerConnectionError: 컨슈머 시작 실패
        """
        consumer = self._consumer_factory(
            queue,
            **self.kafka_config.connection_kwargs(),
            group_id=self.consumer_config.group_id,
            enable_auto_commit=False,
            auto_offset_reset=self.consumer_config.auto_offset_reset,
            session_timeout_ms=self.consumer_config.session_timeout_ms,
            heartbeat_interval_ms=self.consumer_config.heartbeat_interval_ms,
        )

        try:
            await consumer.start()
        except (KafkaError, OSError) as e:
            logger.error(f"Failed to start consumer on {queue}: {e}")
            raise BrokerConnectionError(f"failed to consume from queue {queue}: {e}") from e

        self._consumers.append(consumer)
        logger.info(f"Consuming from {queue} (group={self.consumer_config.group_id})")

        try:
            async for message in consumer:
                self.stats.deliveries_received += 1
                yield Delivery(
                    topic=message.topic,
                    partition=message.partition,
                    offset=message.offset,
                    body=message.value,
                    key=message.key,
                    timestamp=message.timestamp,
                    consumer=consumer,
                )
        finally:
            if consumer in self._consumers:
                self._consumers.remove(consumer)
            await consumer.stop()
            logger.info(f"Consumer on {queue} stopped")

    async def ack(self, delivery: Delivery) -> None:
        """딜리버리 확인 (오프셋 + 1 커밋)"""
        consumer = self._bound_consumer(delivery)
        try:
            await consumer.commit({delivery.topic_partition: delivery.offset + 1})
        except KafkaError as e:
            raise BrokerError(f"failed to acknowledge message: {e}") from e

        self.stats.acks += 1

    async def nack(self, delivery: Delivery, requeue: bool = False) -> None:
        """
        딜리버리 거부

        Args:
            delivery: 거부할 딜리버리
            requeue: True면 재전달, False면 활성 큐에서 영구 제거
        """
        consumer = self._bound_consumer(delivery)
        try:
            if requeue:
                consumer.seek(delivery.topic_partition, delivery.offset)
                self.stats.requeues += 1
            else:
                await consumer.commit({delivery.topic_partition: delivery.offset + 1})
                logger.warning(
                    f"Message dropped: {delivery.topic}[{delivery.partition}]@{delivery.offset}"
                )
        except KafkaError as e:
            raise BrokerError(f"failed to send negative acknowledgment: {e}") from e

        self.stats.nacks += 1

    @staticmethod
    def _bound_consumer(delivery: Delivery) -> Any:
        if delivery.consumer is None:
            raise BrokerError("delivery is not bound to a consumer")
        return delivery.consumer

    async def close(self) -> None:
        """프로듀서/컨슈머 종료"""
        async with self._lock:
            if self._producer is not None:
                producer, self._producer = self._producer, None
                try:
                    await producer.flush()
                    await producer.stop()
                except Exception as e:
                    logger.error(f"Error stopping producer: {e}")

        for consumer in list(self._consumers):
            try:
                await consumer.stop()
            except Exception as e:
                logger.error(f"Error stopping consumer: {e}")
        self._consumers.clear()

        logger.info(f"BrokerChannel closed. {self.stats}")

    async def __aenter__(self) -> "BrokerChannel":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
