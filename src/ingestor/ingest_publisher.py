"""
Ingest Publisher
================

업로드 파일 하나 -> 레코드마다 브로커 메시지 하나
- StreamDecoder로 청크 단위 디코딩
- RecordEncoder로 본문 생성
- BrokerChannel.publish로 파일 순서대로 발행

발행 실패 시 즉시 중단하고 PublishError를 올린다.
이미 발행된 레코드는 되돌리지 않는다 (부분 발행 가능).
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from src.common.broker_channel import BrokerChannel
from src.common.errors import BrokerError, PublishError
from src.common.pipeline_config import get_config
from src.common.records import Header
from src.ingestor.record_encoder import encode_record
from src.ingestor.stream_decoder import (
    ON_MALFORMED_RAISE,
    ON_MALFORMED_SKIP,
    StreamDecoder,
)

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """업로드 한 건 처리 결과"""
    published: int = 0
    malformed: int = 0
    blank_lines: int = 0
    bytes_read: int = 0
    elapsed_ms: float = 0.0
    header: Optional[Header] = None

    def to_dict(self) -> dict:
        return {
            'published': self.published,
            'malformed': self.malformed,
            'blank_lines': self.blank_lines,
            'bytes_read': self.bytes_read,
            'elapsed_ms': self.elapsed_ms,
            'columns': list(self.header.names) if self.header else [],
        }


@dataclass
class PublisherStats:
    """프로듀서 누적 통계"""
    uploads: int = 0
    uploads_failed: int = 0
    records_published: int = 0
    records_malformed: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def records_per_second(self) -> float:
        elapsed = time.time() - self.start_time
        return self.records_published / elapsed if elapsed > 0 else 0

    def __str__(self) -> str:
        return (
            f"PublisherStats(uploads={self.uploads:,}, "
            f"failed={self.uploads_failed:,}, "
            f"published={self.records_published:,}, "
            f"malformed={self.records_malformed:,}, "
            f"rate={self.records_per_second:.1f}/s)"
        )


class IngestPublisher:
    """
    업로드 스트림 -> 브로커 발행기

    업로드마다 독립된 디코드/발행 루프가 요청 컨텍스트 안에서 실행된다.
    """

    def __init__(
        self,
        channel: BrokerChannel,
        topic: Optional[str] = None,
        chunk_size: Optional[int] = None,
        strict: Optional[bool] = None,
    ):
        """
        Args:
            channel: 공유 브로커 채널
            topic: 발행할 큐 이름
            chunk_size: 읽기 청크 크기 (바이트)
            strict: True면 필드 부족 줄에서 업로드 중단
        """
        config = get_config()

        self.channel = channel
        self.topic = topic or config.topics.csv_rows
        self.chunk_size = chunk_size or config.ingest.chunk_size
        self.strict = config.ingest.strict_columns if strict is None else strict

        self.stats = PublisherStats()

        logger.info(
            f"IngestPublisher initialized: "
            f"topic={self.topic}, "
            f"chunk_size={self.chunk_size}, "
            f"strict={self.strict}"
        )

    async def publish_upload(self, source: Any) -> IngestResult:
        """
        업로드 소스 전체를 디코딩하여 발행

        Args:
            source: read(n)을 가진 바이트 소스

        Returns:
            IngestResult

        Raises:
            PublishError: 발행 실패 (published에 직전까지 발행 수)
            MalformedRecordError: strict 모드에서 필드 부족 줄
            OSError: 업로드 본문 읽기 실패
        """
        start_time = time.time()
        self.stats.uploads += 1

        decoder = StreamDecoder(
            source,
            chunk_size=self.chunk_size,
            on_malformed=ON_MALFORMED_RAISE if self.strict else ON_MALFORMED_SKIP,
        )
        published = 0

        try:
            header = await decoder.read_header()
            logger.info(f"Upload started: {len(header)} columns -> {self.topic}")

            async for record in decoder.records():
                try:
                    await self.channel.publish(self.topic, encode_record(record))
                except BrokerError as e:
                    logger.error(
                        f"Failed to publish line {record.line_number} "
                        f"after {published} records: {e}"
                    )
                    raise PublishError(
                        f"Failed to publish line {record.line_number}: {e}",
                        published=published,
                    ) from e

                published += 1

        except Exception:
            self.stats.uploads_failed += 1
            raise
        finally:
            self.stats.records_published += published
            self.stats.records_malformed += decoder.stats.malformed_lines

        result = IngestResult(
            published=published,
            malformed=decoder.stats.malformed_lines,
            blank_lines=decoder.stats.blank_lines,
            bytes_read=decoder.stats.bytes_read,
            elapsed_ms=(time.time() - start_time) * 1000,
            header=decoder.header,
        )

        logger.info(
            f"Upload finished: published={result.published:,}, "
            f"malformed={result.malformed:,}, "
            f"bytes={result.bytes_read:,}, "
            f"time={result.elapsed_ms:.1f}ms"
        )
        return result
