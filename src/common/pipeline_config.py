"""
Pipeline Configuration
======================

환경변수로 설정 가능한 CSV 스트림 파이프라인 설정들
- Kafka (브로커 연결, 토픽, 프로듀서/컨슈머)
- PostgreSQL (저장소)
- Redis (캐시)
- Ingest / API
"""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class KafkaConfig:
    """Kafka 연결 설정"""

    # Connection
    bootstrap_servers: str = field(
        default_factory=lambda: os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    )
    client_id: str = field(
        default_factory=lambda: os.getenv("KAFKA_CLIENT_ID", "csv-ingest")
    )

    # Security (optional)
    security_protocol: str = field(
        default_factory=lambda: os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT")
    )
    sasl_mechanism: Optional[str] = field(
        default_factory=lambda: os.getenv("KAFKA_SASL_MECHANISM")
    )
    sasl_username: Optional[str] = field(
        default_factory=lambda: os.getenv("KAFKA_SASL_USERNAME")
    )
    sasl_password: Optional[str] = field(
        default_factory=lambda: os.getenv("KAFKA_SASL_PASSWORD")
    )

    def connection_kwargs(self) -> dict:
        """aiokafka 클라이언트 공통 인자"""
        kwargs = {
            'bootstrap_servers': self.bootstrap_servers,
            'client_id': self.client_id,
            'security_protocol': self.security_protocol,
        }
        if self.sasl_mechanism:
            kwargs['sasl_mechanism'] = self.sasl_mechanism
            kwargs['sasl_plain_username'] = self.sasl_username
            kwargs['sasl_plain_password'] = self.sasl_password
        return kwargs


@dataclass
class TopicConfig:
    """Kafka 토픽 설정"""

    # CSV 한 줄 = 메시지 한 개
    csv_rows: str = field(
        default_factory=lambda: os.getenv("KAFKA_CSV_TOPIC", "csv.rows")
    )

    # 단일 파티션이어야 소비 순서 == 발행 순서
    num_partitions: int = field(
        default_factory=lambda: int(os.getenv("KAFKA_CSV_TOPIC_PARTITIONS", "1"))
    )
    replication_factor: int = field(
        default_factory=lambda: int(os.getenv("KAFKA_CSV_TOPIC_REPLICATION", "1"))
    )


@dataclass
class ProducerConfig:
    """Kafka Producer 설정"""

    # Reliability (fire-and-forget: 브로커 확인을 기다리지 않음)
    acks: int = field(
        default_factory=lambda: int(os.getenv("KAFKA_PRODUCER_ACKS", "0"))
    )

    # Batching
    linger_ms: int = field(
        default_factory=lambda: int(os.getenv("KAFKA_PRODUCER_LINGER_MS", "5"))
    )

    # Timeout
    request_timeout_ms: int = field(
        default_factory=lambda: int(os.getenv("KAFKA_PRODUCER_TIMEOUT_MS", "30000"))
    )


@dataclass
class ConsumerConfig:
    """Kafka Consumer 설정"""

    # Group (단일 그룹 = 이 배포 전용 소비)
    group_id: str = field(
        default_factory=lambda: os.getenv("KAFKA_CONSUMER_GROUP", "csv-ingest-consumer")
    )

    # Offset
    auto_offset_reset: str = field(
        default_factory=lambda: os.getenv("KAFKA_CONSUMER_OFFSET_RESET", "earliest")
    )

    # Session
    session_timeout_ms: int = field(
        default_factory=lambda: int(os.getenv("KAFKA_CONSUMER_SESSION_TIMEOUT", "30000"))
    )
    heartbeat_interval_ms: int = field(
        default_factory=lambda: int(os.getenv("KAFKA_CONSUMER_HEARTBEAT", "10000"))
    )

    # Worker pool (기본 1 = 순차 처리)
    worker_count: int = field(
        default_factory=lambda: int(os.getenv("CONSUMER_WORKERS", "1"))
    )


@dataclass
class PostgresConfig:
    """PostgreSQL 설정"""

    host: str = field(
        default_factory=lambda: os.getenv("POSTGRES_HOST", "localhost")
    )
    port: int = field(
        default_factory=lambda: int(os.getenv("POSTGRES_PORT", "5432"))
    )
    database: str = field(
        default_factory=lambda: os.getenv("POSTGRES_DB", "csv_ingest")
    )
    user: str = field(
        default_factory=lambda: os.getenv("POSTGRES_USER", "csv")
    )
    password: str = field(
        default_factory=lambda: os.getenv("POSTGRES_PASSWORD", "csv123")
    )

    # Connection Pool
    min_connections: int = field(
        default_factory=lambda: int(os.getenv("POSTGRES_MIN_CONN", "1"))
    )
    max_connections: int = field(
        default_factory=lambda: int(os.getenv("POSTGRES_MAX_CONN", "10"))
    )

    @property
    def dsn(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


@dataclass
class RedisConfig:
    """Redis 캐시 설정"""

    host: str = field(
        default_factory=lambda: os.getenv("REDIS_HOST", "localhost")
    )
    port: int = field(
        default_factory=lambda: int(os.getenv("REDIS_PORT", "6379"))
    )
    db: int = field(
        default_factory=lambda: int(os.getenv("REDIS_DB", "0"))
    )
    username: Optional[str] = field(
        default_factory=lambda: os.getenv("REDIS_USERNAME")
    )
    password: Optional[str] = field(
        default_factory=lambda: os.getenv("REDIS_PASSWORD")
    )

    # 캐시 정책
    ttl_seconds: int = field(
        default_factory=lambda: int(os.getenv("REDIS_CACHE_TTL", "3600"))
    )
    key_prefix: str = field(
        default_factory=lambda: os.getenv("REDIS_KEY_PREFIX", "")
    )


@dataclass
class IngestConfig:
    """업로드 디코딩 설정"""

    # 한 번에 읽는 바이트 수
    chunk_size: int = field(
        default_factory=lambda: int(os.getenv("INGEST_CHUNK_SIZE", "100"))
    )

    # True면 필드 수가 부족한 줄에서 업로드 전체 중단
    strict_columns: bool = field(
        default_factory=lambda: _env_bool("INGEST_STRICT_COLUMNS", "false")
    )


@dataclass
class ApiConfig:
    """HTTP API 설정"""

    prefix: str = field(
        default_factory=lambda: os.getenv("API_PREFIX", "/api/v1")
    )
    default_limit: int = field(
        default_factory=lambda: int(os.getenv("API_DEFAULT_LIMIT", "100"))
    )

    # API 프로세스 안에서 컨슈머도 같이 실행할지
    run_consumer: bool = field(
        default_factory=lambda: _env_bool("API_RUN_CONSUMER", "true")
    )


@dataclass
class StreamPipelineConfig:
    """전체 파이프라인 통합 설정"""

    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    topics: TopicConfig = field(default_factory=TopicConfig)
    producer: ProducerConfig = field(default_factory=ProducerConfig)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


_config: Optional[StreamPipelineConfig] = None


def get_config() -> StreamPipelineConfig:
    """설정 인스턴스 반환 (최초 호출 시 환경변수에서 생성)"""
    global _config
    if _config is None:
        _config = StreamPipelineConfig()
    return _config


def reset_config() -> StreamPipelineConfig:
    """환경변수를 다시 읽어 설정 재생성 (테스트용)"""
    global _config
    _config = StreamPipelineConfig()
    return _config
