"""
Ingest Publisher 테스트
=======================

Usage:
    pytest tests/test_ingest_publisher.py -v
"""

import io
import json

import pytest

from src.common.errors import BrokerConnectionError, MalformedRecordError, PublishError
from src.common.pipeline_config import reset_config
from src.ingestor.ingest_publisher import IngestPublisher


class FakeChannel:
    """발행된 본문을 순서대로 보관하는 채널 (fail_on번째 발행에서 실패)"""

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.calls = 0
        self.queue = []

    async def publish(self, queue, payload, key=None):
        self.calls += 1
        if self.calls == self.fail_on:
            raise BrokerConnectionError("connection reset by peer")
        self.queue.append((queue, payload))


def published_ids(channel):
    return [json.loads(json.loads(body))["id"] for _, body in channel.queue]


CSV = b"id,first_name,last_name\n1,Ann,Lee\n2,Bo,Kim\n3,Cy,Park\n"


class TestIngestPublisher:
    """IngestPublisher 테스트"""

    @pytest.mark.asyncio
    async def test_publishes_one_message_per_record_in_order(self):
        """파일 순서대로 레코드당 메시지 하나"""
        channel = FakeChannel()
        publisher = IngestPublisher(channel, topic="csv.rows", chunk_size=7)

        result = await publisher.publish_upload(io.BytesIO(CSV))

        assert result.published == 3
        assert result.malformed == 0
        assert published_ids(channel) == ["1", "2", "3"]
        assert all(queue == "csv.rows" for queue, _ in channel.queue)
        assert result.to_dict()["columns"] == ["id", "first_name", "last_name"]

    @pytest.mark.asyncio
    async def test_publish_failure_stops_upload(self):
        """2번째 발행 실패 -> 1개만 큐에 도달, 되돌리지 않음"""
        channel = FakeChannel(fail_on=2)
        publisher = IngestPublisher(channel, topic="csv.rows", chunk_size=10)

        with pytest.raises(PublishError) as exc_info:
            await publisher.publish_upload(io.BytesIO(CSV))

        assert exc_info.value.published == 1
        assert published_ids(channel) == ["1"]
        assert channel.calls == 2
        assert publisher.stats.uploads_failed == 1
        assert publisher.stats.records_published == 1

    @pytest.mark.asyncio
    async def test_malformed_lines_skipped_by_default(self):
        """필드 부족 줄은 건너뛰고 계속"""
        data = b"id,first_name,last_name\n1,Ann,Lee\n3,Cy,\n4,Di,Ng\n"
        channel = FakeChannel()
        publisher = IngestPublisher(channel, topic="csv.rows", strict=False)

        result = await publisher.publish_upload(io.BytesIO(data))

        assert result.published == 2
        assert result.malformed == 1
        assert published_ids(channel) == ["1", "4"]

    @pytest.mark.asyncio
    async def test_strict_mode_aborts_on_malformed_line(self):
        """strict 모드는 필드 부족 줄에서 중단"""
        data = b"id,first_name,last_name\n1,Ann,Lee\n3,Cy,\n4,Di,Ng\n"
        channel = FakeChannel()
        publisher = IngestPublisher(channel, topic="csv.rows", strict=True)

        with pytest.raises(MalformedRecordError):
            await publisher.publish_upload(io.BytesIO(data))

        assert published_ids(channel) == ["1"]

    @pytest.mark.asyncio
    async def test_header_only_publishes_nothing(self):
        """헤더만 있는 업로드"""
        channel = FakeChannel()
        publisher = IngestPublisher(channel, topic="csv.rows")

        result = await publisher.publish_upload(io.BytesIO(b"id,first_name\n"))

        assert result.published == 0
        assert channel.queue == []

    @pytest.mark.asyncio
    async def test_uses_configured_topic(self, monkeypatch):
        """토픽 기본값은 설정에서"""
        monkeypatch.setenv("KAFKA_CSV_TOPIC", "uploads.rows")
        reset_config()

        channel = FakeChannel()
        publisher = IngestPublisher(channel)
        await publisher.publish_upload(io.BytesIO(b"id\n1\n"))

        assert channel.queue[0][0] == "uploads.rows"
