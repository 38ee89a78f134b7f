"""
CSV Records
===========

업로드 한 건의 헤더와 데이터 줄 레코드
- Header: 첫 줄에서 한 번 파싱, 업로드 동안 불변
- CsvRecord: 필드명 -> 원본 문자열 값
"""

from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence

from src.common.errors import MalformedRecordError

BOM = "\ufeff"


@dataclass(frozen=True)
class Header:
    """컬럼 순서대로의 필드명"""
    names: tuple[str, ...]

    @classmethod
    def parse(cls, line: str) -> "Header":
        """
        헤더 줄 파싱

        BOM 제거 -> 앞뒤 공백 제거 -> ',' 분리
        """
        line = line.strip(BOM).strip()
        return cls(names=tuple(line.split(",")))

    def __len__(self) -> int:
        return len(self.names)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def bind(self, values: Sequence[str], line_number: int = 0) -> "CsvRecord":
        """
        위치 기준으로 값을 필드명에 매핑

        값이 헤더보다 적으면 MalformedRecordError.
        헤더보다 많은 뒤쪽 값은 버린다.
        """
        if len(values) < len(self.names):
            raise MalformedRecordError(
                f"line {line_number}: expected {len(self.names)} fields, got {len(values)}",
                line_number=line_number,
                expected=len(self.names),
                actual=len(values),
            )

        fields = {name: values[i] for i, name in enumerate(self.names)}
        return CsvRecord(fields=fields, line_number=line_number)


@dataclass(frozen=True)
class CsvRecord:
    """디코딩된 데이터 줄 하나"""
    fields: dict[str, str] = field(default_factory=dict)
    line_number: int = 0

    def __getitem__(self, name: str) -> str:
        return self.fields[name]

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.fields.get(name, default)

    def to_dict(self) -> dict[str, str]:
        return dict(self.fields)
