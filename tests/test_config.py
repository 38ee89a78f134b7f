"""
Pipeline Configuration 테스트
=============================
"""

from src.common.pipeline_config import get_config, reset_config


class TestPipelineConfig:
    """환경변수 설정 테스트"""

    def test_defaults(self, monkeypatch):
        """기본값"""
        for name in ("KAFKA_CSV_TOPIC", "INGEST_CHUNK_SIZE", "REDIS_CACHE_TTL",
                     "KAFKA_PRODUCER_ACKS", "CONSUMER_WORKERS", "API_DEFAULT_LIMIT",
                     "INGEST_STRICT_COLUMNS", "KAFKA_CSV_TOPIC_PARTITIONS"):
            monkeypatch.delenv(name, raising=False)
        config = reset_config()

        assert config.topics.csv_rows == "csv.rows"
        assert config.topics.num_partitions == 1
        assert config.ingest.chunk_size == 100
        assert config.ingest.strict_columns is False
        assert config.redis.ttl_seconds == 3600
        assert config.producer.acks == 0
        assert config.consumer.worker_count == 1
        assert config.api.default_limit == 100

    def test_env_overrides(self, monkeypatch):
        """환경변수 우선"""
        monkeypatch.setenv("INGEST_CHUNK_SIZE", "4096")
        monkeypatch.setenv("INGEST_STRICT_COLUMNS", "yes")
        monkeypatch.setenv("API_RUN_CONSUMER", "false")
        monkeypatch.setenv("POSTGRES_HOST", "db.internal")

        config = reset_config()

        assert config.ingest.chunk_size == 4096
        assert config.ingest.strict_columns is True
        assert config.api.run_consumer is False
        assert "@db.internal:" in config.postgres.dsn

    def test_get_config_is_cached(self):
        """같은 인스턴스 반환"""
        assert get_config() is get_config()

    def test_sasl_kwargs(self, monkeypatch):
        """SASL 설정 시 인증 인자 추가"""
        monkeypatch.setenv("KAFKA_SASL_MECHANISM", "PLAIN")
        monkeypatch.setenv("KAFKA_SASL_USERNAME", "svc")
        monkeypatch.setenv("KAFKA_SASL_PASSWORD", "secret")

        kwargs = reset_config().kafka.connection_kwargs()

        assert kwargs["sasl_mechanism"] == "PLAIN"
        assert kwargs["sasl_plain_username"] == "svc"
