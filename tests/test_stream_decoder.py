"""
Stream Decoder 테스트
=====================

Usage:
    pytest tests/test_stream_decoder.py -v
"""

import io

import pytest

from src.common.errors import MalformedRecordError
from src.common.records import Header
from src.ingestor.stream_decoder import StreamDecoder


class ChunkedSource:
    """요청 크기와 무관하게 정해진 청크를 순서대로 돌려주는 비동기 소스"""

    def __init__(self, chunks: list[bytes]):
        self._chunks = list(chunks)
        self.reads = 0

    async def read(self, size: int = -1) -> bytes:
        self.reads += 1
        if not self._chunks:
            return b""
        return self._chunks.pop(0)


async def decode_all(source, chunk_size: int = 100, **kwargs):
    decoder = StreamDecoder(source, chunk_size=chunk_size, **kwargs)
    records = [record.to_dict() async for record in decoder.records()]
    return decoder, records


SAMPLE = (
    b"id,first_name,last_name,email_address\n"
    b"1,Ann,Lee,ann@example.com\n"
    b"2,Bo,Kim,bo@example.com\r\n"
    b"\n"
    b"3,Cy,Park,cy@example.com\n"
    b"4,Di,Choi,di@example.com"
)


class TestHeader:
    """Header 테스트"""

    def test_parse_strips_bom_and_whitespace(self):
        """BOM과 공백 제거"""
        header = Header.parse("\ufeff id,first_name,last_name \r")
        assert header.names == ("id", "first_name", "last_name")

    def test_bind_by_position(self):
        """위치 기준 매핑"""
        header = Header.parse("id,first_name")
        record = header.bind(["7", "Ann"], line_number=2)

        assert record.to_dict() == {"id": "7", "first_name": "Ann"}
        assert record.line_number == 2

    def test_bind_short_line_raises(self):
        """필드 수 부족"""
        header = Header.parse("id,first_name,last_name")

        with pytest.raises(MalformedRecordError) as exc_info:
            header.bind(["3", "Cy"], line_number=5)

        assert exc_info.value.line_number == 5
        assert exc_info.value.expected == 3
        assert exc_info.value.actual == 2

    def test_bind_ignores_extra_values(self):
        """헤더보다 많은 값은 버림"""
        header = Header.parse("id,first_name")
        record = header.bind(["1", "Ann", "extra"])

        assert record.to_dict() == {"id": "1", "first_name": "Ann"}


class TestStreamDecoder:
    """StreamDecoder 테스트"""

    @pytest.mark.asyncio
    async def test_scenario_two_chunks_any_offset(self):
        """두 청크로 나뉜 본문 (개행 없이 끝남) -> 레코드 2개"""
        header = b"id,first_name,last_name\n"
        body = b"1,Ann,Lee\n2,Bo,Kim"
        expected = [
            {"id": "1", "first_name": "Ann", "last_name": "Lee"},
            {"id": "2", "first_name": "Bo", "last_name": "Kim"},
        ]

        for offset in range(1, len(body)):
            source = ChunkedSource([header, body[:offset], body[offset:]])
            _, records = await decode_all(source)
            assert records == expected, f"split at {offset}"

    @pytest.mark.asyncio
    async def test_chunk_boundary_invariance(self):
        """청크 크기와 무관하게 같은 레코드 시퀀스"""
        _, reference = await decode_all(io.BytesIO(SAMPLE), chunk_size=len(SAMPLE) + 1)
        assert len(reference) == 4

        for chunk_size in range(1, len(SAMPLE) + 2):
            decoder, records = await decode_all(io.BytesIO(SAMPLE), chunk_size=chunk_size)
            assert records == reference, f"chunk_size={chunk_size}"
            assert decoder.stats.blank_lines == 1

    @pytest.mark.asyncio
    async def test_trailing_line_without_newline_emitted_once(self):
        """개행 없는 마지막 줄은 정확히 한 번"""
        data = b"id,name\n1,a\n2,b"

        for chunk_size in (1, 3, 5, 100):
            _, records = await decode_all(io.BytesIO(data), chunk_size=chunk_size)
            assert [r["id"] for r in records] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_blank_lines_produce_no_records(self):
        """빈 줄은 레코드 0개"""
        data = b"id,name\n\n1,a\n\r\n\n2,b\n\n"

        decoder, records = await decode_all(io.BytesIO(data), chunk_size=4)

        assert [r["id"] for r in records] == ["1", "2"]
        assert decoder.stats.blank_lines == 4
        assert decoder.stats.records_emitted == 2

    @pytest.mark.asyncio
    async def test_carriage_returns_stripped(self):
        """CRLF 줄바꿈"""
        data = b"\xef\xbb\xbfid,name\r\n1,Ann\r\n2,Bo\r\n"

        decoder, records = await decode_all(io.BytesIO(data), chunk_size=3)

        assert decoder.header.names == ("id", "name")
        assert records == [{"id": "1", "name": "Ann"}, {"id": "2", "name": "Bo"}]

    @pytest.mark.asyncio
    async def test_multibyte_characters_split_across_chunks(self):
        """청크 경계에서 잘린 멀티바이트 문자"""
        data = "id,name\n1,김철수\n2,이영희\n".encode("utf-8")

        _, records = await decode_all(io.BytesIO(data), chunk_size=1)

        assert records == [{"id": "1", "name": "김철수"}, {"id": "2", "name": "이영희"}]

    @pytest.mark.asyncio
    async def test_short_line_skipped(self):
        """필드 부족 줄 -> 에러 기록, 레코드 없음, 계속 진행"""
        data = b"id,first_name,last_name\n3,Cy,\n4,Di,Ng\n"

        decoder, records = await decode_all(io.BytesIO(data), chunk_size=5)

        assert records == [{"id": "4", "first_name": "Di", "last_name": "Ng"}]
        assert decoder.stats.malformed_lines == 1
        assert len(decoder.malformed) == 1
        assert decoder.malformed[0].line_number == 2

    @pytest.mark.asyncio
    async def test_short_line_raises_in_strict_mode(self):
        """raise 정책이면 예외 전파"""
        data = b"id,first_name,last_name\n1,Ann,Lee\n3,Cy\n"
        decoder = StreamDecoder(io.BytesIO(data), chunk_size=8, on_malformed="raise")

        seen = []
        with pytest.raises(MalformedRecordError):
            async for record in decoder.records():
                seen.append(record["id"])

        assert seen == ["1"]

    @pytest.mark.asyncio
    async def test_trailing_delimiter_terminates_line(self):
        """끝의 구분자는 종결자: "3,Cy," 는 2개 필드"""
        data = b"id,first_name,last_name\n3,Cy,\n4,Di,,\n"

        decoder, records = await decode_all(io.BytesIO(data))

        assert records == [{"id": "4", "first_name": "Di", "last_name": ""}]
        assert decoder.stats.malformed_lines == 1
        assert decoder.malformed[0].actual == 2

    @pytest.mark.asyncio
    async def test_header_only(self):
        """헤더만 있는 파일"""
        decoder, records = await decode_all(io.BytesIO(b"id,name\n"), chunk_size=2)

        assert records == []
        assert decoder.header.names == ("id", "name")

    @pytest.mark.asyncio
    async def test_empty_source(self):
        """빈 소스"""
        decoder, records = await decode_all(io.BytesIO(b""))

        assert records == []
        assert decoder.stats.bytes_read == 0

    @pytest.mark.asyncio
    async def test_records_not_restartable(self):
        """재시작 불가"""
        decoder = StreamDecoder(io.BytesIO(b"id\n1\n"))
        [r async for r in decoder.records()]

        with pytest.raises(RuntimeError):
            async for _ in decoder.records():
                pass

    @pytest.mark.asyncio
    async def test_reads_lazily(self):
        """소비한 만큼만 읽기"""
        source = ChunkedSource([b"id\n", b"1\n", b"2\n", b"3\n"])
        decoder = StreamDecoder(source, chunk_size=2)

        records = decoder.records()
        first = await records.__anext__()

        assert first["id"] == "1"
        assert source.reads == 2
        await records.aclose()

    def test_invalid_arguments(self):
        """잘못된 인자"""
        with pytest.raises(ValueError):
            StreamDecoder(io.BytesIO(b""), chunk_size=0)
        with pytest.raises(ValueError):
            StreamDecoder(io.BytesIO(b""), on_malformed="ignore")
