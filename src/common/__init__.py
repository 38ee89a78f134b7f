"""
Common Module - Shared utilities across all layers
===================================================

Cross-layer shared code:
- pipeline_config: Pipeline configuration (Kafka, PostgreSQL, Redis, Ingest, API)
- broker_channel: Kafka queue channel shared by publisher and consumer
- records: CSV header / record types
- errors: Pipeline exception hierarchy
"""

from .pipeline_config import get_config, reset_config, StreamPipelineConfig
from .errors import (
    PipelineError,
    MalformedRecordError,
    PayloadDecodeError,
    BrokerError,
    BrokerConnectionError,
    PublishError,
    StoreError,
    CacheError,
)
from .records import Header, CsvRecord
from .broker_channel import BrokerChannel, Delivery, ChannelStats

__all__ = [
    "get_config",
    "reset_config",
    "StreamPipelineConfig",
    "PipelineError",
    "MalformedRecordError",
    "PayloadDecodeError",
    "BrokerError",
    "BrokerConnectionError",
    "PublishError",
    "StoreError",
    "CacheError",
    "Header",
    "CsvRecord",
    "BrokerChannel",
    "Delivery",
    "ChannelStats",
]
