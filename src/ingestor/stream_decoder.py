"""
Stream Decoder - Chunked CSV Decoder
====================================

업로드 바이트 스트림을 고정 크기 청크로 읽어 CSV 레코드로 복원
- 첫 줄은 헤더 (BOM/공백 제거 후 ',' 분리)
- 청크 경계에서 잘린 줄은 carry-over로 보관 후 다음 청크와 결합
- 빈 줄은 건너뜀
- 필드 수가 부족한 줄은 MalformedRecordError (skip 또는 raise)

메모리에는 청크 하나 + carry-over 하나만 유지하므로
파일 크기와 무관하게 사용량이 일정하다.
"""

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from src.common.errors import MalformedRecordError
from src.common.records import CsvRecord, Header

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 100

ON_MALFORMED_SKIP = "skip"
ON_MALFORMED_RAISE = "raise"


@dataclass
class DecoderStats:
    """디코더 통계"""
    bytes_read: int = 0
    chunks_read: int = 0
    records_emitted: int = 0
    blank_lines: int = 0
    malformed_lines: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def elapsed_ms(self) -> float:
        return (time.time() - self.start_time) * 1000

    def __str__(self) -> str:
        return (
            f"DecoderStats(records={self.records_emitted:,}, "
            f"blank={self.blank_lines:,}, "
            f"malformed={self.malformed_lines:,}, "
            f"bytes={self.bytes_read:,}, "
            f"chunks={self.chunks_read:,})"
        )


class StreamDecoder:
    """
    바이트 소스 -> CsvRecord 지연 시퀀스

    source는 read(n)을 가진 객체면 된다 (동기/비동기 모두 허용).
    FastAPI UploadFile, io.BytesIO, 열린 파일 등.

    Usage:
        decoder = StreamDecoder(upload_file, chunk_size=100)
        async for record in decoder.records():
            ...
    """

    def __init__(
        self,
        source: Any,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_malformed: str = ON_MALFORMED_SKIP,
        max_tracked_errors: int = 100,
    ):
        """
        Args:
            source: read(n) 메서드를 가진 바이트 소스
            chunk_size: 한 번에 읽을 바이트 수
            on_malformed: 필드 부족 줄 처리 ("skip" 또는 "raise")
            max_tracked_errors: malformed 목록에 보관할 최대 에러 수
        """
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if on_malformed not in (ON_MALFORMED_SKIP, ON_MALFORMED_RAISE):
            raise ValueError(f"Unknown on_malformed policy: {on_malformed}")

        self.source = source
        self.chunk_size = chunk_size
        self.on_malformed = on_malformed
        self.max_tracked_errors = max_tracked_errors

        self.header: Optional[Header] = None
        self.malformed: list[MalformedRecordError] = []
        self.stats = DecoderStats()

        self._carry = b""
        self._line_number = 0
        self._started = False

    async def _read_chunk(self) -> bytes:
        """소스에서 청크 하나 읽기 (EOF면 b'')"""
        data = self.source.read(self.chunk_size)
        if inspect.isawaitable(data):
            data = await data

        if data:
            self.stats.bytes_read += len(data)
            self.stats.chunks_read += 1
        return data or b""

    async def read_header(self) -> Header:
        """
        첫 줄을 헤더로 파싱

        헤더 줄 뒤에 같이 읽힌 바이트는 carry-over로 남긴다.
        """
        if self.header is not None:
            return self.header

        buffer = b""
        while True:
            chunk = await self._read_chunk()
            if not chunk:
                header_bytes, self._carry = buffer, b""
                break

            buffer += chunk
            newline = buffer.find(b"\n")
            if newline >= 0:
                header_bytes, self._carry = buffer[:newline], buffer[newline + 1:]
                break

        self._line_number = 1
        self.header = Header.parse(header_bytes.decode("utf-8", errors="replace"))
        logger.debug(f"Parsed header with {len(self.header)} columns: {self.header.names}")
        return self.header

    async def records(self) -> AsyncIterator[CsvRecord]:
        """
        레코드 지연 시퀀스 (재시작 불가)

        Yields:
            완전한 비어있지 않은 줄마다 CsvRecord 하나
        """
        if self._started:
            raise RuntimeError("StreamDecoder records() can only be iterated once")
        self._started = True

        if self.header is None:
            await self.read_header()

        while True:
            chunk = await self._read_chunk()
            if not chunk:
                break

            data = self._carry + chunk
            lines = data.split(b"\n")

            # 개행으로 끝나지 않으면 마지막 조각은 미완성 줄
            self._carry = lines.pop()

            for raw_line in lines:
                record = self._decode_line(raw_line)
                if record is not None:
                    yield record

        # EOF: 남은 carry-over를 마지막 줄로 처리
        remaining, self._carry = self._carry, b""
        if remaining:
            # 헤더와 함께 읽힌 나머지는 여러 줄일 수 있음
            lines = remaining.split(b"\n")
            if not lines[-1]:
                lines.pop()

            for raw_line in lines:
                record = self._decode_line(raw_line)
                if record is not None:
                    yield record

        logger.debug(f"Decoding finished: {self.stats}")

    def _decode_line(self, raw_line: bytes) -> Optional[CsvRecord]:
        """
        완전한 줄 하나를 레코드로 변환 (빈 줄/불량 줄이면 None)

        끝의 구분자 하나는 줄 종결자로 취급한다. 따라서 마지막 컬럼이
        실제로 빈 값인 줄 ("1,Ann,")은 필드가 하나 모자라 불량 줄이 되고,
        skip 모드에서는 버려진다. 마지막 빈 값을 보존하려면 구분자를 하나 더
        붙이고 ("1,Ann,,"), 조용한 누락 대신 업로드 실패를 원하면
        INGEST_STRICT_COLUMNS=true로 실행한다.
        """
        self._line_number += 1

        line = raw_line.decode("utf-8", errors="replace").replace("\r", "")
        if not line:
            self.stats.blank_lines += 1
            return None

        values = line.split(",")
        # 끝의 구분자 하나는 줄 종결자로 취급 ("3,Cy," -> 2개 필드)
        if len(values) > 1 and values[-1] == "":
            values.pop()

        try:
            record = self.header.bind(values, line_number=self._line_number)
        except MalformedRecordError as e:
            self.stats.malformed_lines += 1
            if self.on_malformed == ON_MALFORMED_RAISE:
                raise

            logger.warning(f"Skipping malformed line: {e}")
            if len(self.malformed) < self.max_tracked_errors:
                self.malformed.append(e)
            return None

        self.stats.records_emitted += 1
        return record
