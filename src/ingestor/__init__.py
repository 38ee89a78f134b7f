"""
Ingestor Module - Upload -> Broker
==================================

HTTP 업로드를 줄 단위 메시지로 변환하여 발행
- 청크 단위 스트리밍 디코딩 (파일 전체를 메모리에 올리지 않음)
- 레코드마다 JSON 메시지 하나

Components:
- stream_decoder: 청크 경계를 처리하는 CSV 디코더
- record_encoder: 레코드 <-> 메시지 본문
- ingest_publisher: 디코더 + 인코더 + 브로커 발행
"""

from .stream_decoder import StreamDecoder, DecoderStats
from .record_encoder import encode_record, decode_payload
from .ingest_publisher import IngestPublisher, IngestResult, PublisherStats

__all__ = [
    "StreamDecoder",
    "DecoderStats",
    "encode_record",
    "decode_payload",
    "IngestPublisher",
    "IngestResult",
    "PublisherStats",
]
