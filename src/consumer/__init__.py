"""
Consumer Module - Broker -> Store
=================================

큐의 딜리버리를 순차 처리하여 PostgreSQL에 저장하고 Redis에 미러링
"""

from .record_consumer import RecordConsumer, ConsumerStats, DeliveryOutcome

__all__ = [
    "RecordConsumer",
    "ConsumerStats",
    "DeliveryOutcome",
]
