"""
Record Encoder
==============

CsvRecord <-> 브로커 메시지 본문

본문 형식: 필드 매핑 JSON을 한 번 더 JSON 문자열로 감싼 형태
    "{\"id\":\"1\",\"first_name\":\"Ann\"}"

컨슈머는 문자열 봉투를 벗긴 뒤 필드 매핑으로 파싱한다.
봉투 없는 JSON 객체 본문도 허용한다.
"""

import json
from typing import Union

from src.common.errors import PayloadDecodeError
from src.common.records import CsvRecord


def encode_record(record: Union[CsvRecord, dict]) -> bytes:
    """레코드를 메시지 본문으로 직렬화"""
    fields = record.to_dict() if isinstance(record, CsvRecord) else dict(record)
    inner = json.dumps(fields, ensure_ascii=False, separators=(",", ":"))
    return json.dumps(inner, ensure_ascii=False).encode("utf-8")


def decode_payload(body: Union[bytes, str]) -> tuple[dict[str, str], str]:
    """
    메시지 본문 -> (필드 매핑, 원본 레코드 JSON)

    Raises:
        PayloadDecodeError: JSON이 아니거나, 필드 매핑이 아닌 경우
    """
    try:
        text = body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else body
        decoded = json.loads(text)

        raw_json = text
        if isinstance(decoded, str):
            raw_json = decoded
            decoded = json.loads(decoded)

    except (UnicodeDecodeError, TypeError, json.JSONDecodeError) as e:
        raise PayloadDecodeError(f"Failed to unmarshal JSON: {e}") from e

    if not isinstance(decoded, dict):
        raise PayloadDecodeError(
            f"Payload is not a field mapping: {type(decoded).__name__}"
        )

    fields = {}
    for key, value in decoded.items():
        if isinstance(value, (dict, list)):
            raise PayloadDecodeError(f"Field {key!r} has a nested value")
        fields[key] = value if value is None or isinstance(value, str) else str(value)

    return fields, raw_json
