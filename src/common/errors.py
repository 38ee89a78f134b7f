"""
Pipeline Errors
===============

파이프라인 예외 계층
- 입력 오류: MalformedRecordError, PayloadDecodeError
- 전송 오류: BrokerError, BrokerConnectionError, PublishError
- 저장 오류: StoreError
- 캐시 오류: CacheError (컨슈머에서 항상 무시)
"""

from typing import Optional


class PipelineError(Exception):
    """파이프라인 공통 예외"""


class MalformedRecordError(PipelineError):
    """필드 수가 헤더와 맞지 않거나 필드 매핑으로 해석할 수 없는 레코드"""

    def __init__(
        self,
        message: str,
        line_number: Optional[int] = None,
        expected: Optional[int] = None,
        actual: Optional[int] = None,
    ):
        super().__init__(message)
        self.line_number = line_number
        self.expected = expected
        self.actual = actual


class PayloadDecodeError(MalformedRecordError):
    """메시지 본문 디코딩 실패"""


class BrokerError(PipelineError):
    """브로커 전송 오류"""


class BrokerConnectionError(BrokerError):
    """브로커 연결 실패"""


class PublishError(BrokerError):
    """발행 실패 (이미 발행된 레코드 수 포함)"""

    def __init__(self, message: str, published: int = 0):
        super().__init__(message)
        self.published = published


class StoreError(PipelineError):
    """저장소 쓰기/조회 실패"""


class CacheError(PipelineError):
    """캐시 쓰기/조회 실패"""
