"""
CSV Ingest API
==============

Endpoints:
  GET  /api/v1/data    - 저장된 행 조회 (필터 + limit/offset)
  POST /api/v1/upload  - CSV 업로드 (multipart field "file") -> 줄마다 메시지 발행
  GET  /health         - 브로커/저장소/캐시 상태

업로드는 요청 컨텍스트 안에서 바로 디코딩/발행되고,
저장은 백그라운드 RecordConsumer가 담당한다.

Docs: http://localhost:8080/docs (Swagger UI 자동 생성)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, File, Request, UploadFile
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from src.common.broker_channel import BrokerChannel
from src.common.errors import BrokerError, MalformedRecordError, PublishError, StoreError
from src.common.pipeline_config import get_config
from src.consumer.record_consumer import RecordConsumer
from src.ingestor.ingest_publisher import IngestPublisher
from src.storage.postgres_writer import FILTER_COLUMNS, PostgresWriter
from src.storage.redis_cache import RecordCache

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Response Models
# ──────────────────────────────────────────────
class HealthResponse(BaseModel):
    status: str          # "ok" | "degraded"
    broker: str          # "connected" | "idle"
    db: str              # "connected" | "error"
    cache: str           # "connected" | "error"
    consumer: str        # "running" | "stopped" | "disabled"


# ──────────────────────────────────────────────
# Resources
# ──────────────────────────────────────────────
class AppResources:
    """앱 수명 동안 공유하는 협력 객체"""

    def __init__(
        self,
        channel: BrokerChannel,
        store: Any,
        cache: Any,
        publisher: IngestPublisher,
        consumer: Optional[RecordConsumer] = None,
    ):
        self.channel = channel
        self.store = store
        self.cache = cache
        self.publisher = publisher
        self.consumer = consumer
        self.consumer_task: Optional[asyncio.Task] = None


def _parse_int(value: Optional[str], name: str, default: int) -> int:
    if value is None or value == "":
        return default
    parsed = int(value)
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _log_consumer_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Background consumer stopped with error: {error}")


def _build_router(resources: AppResources, prefix: str, default_limit: int) -> APIRouter:
    router = APIRouter(prefix=prefix)

    @router.get("/data", tags=["Data"])
    async def get_data(request: Request):
        """저장된 행 조회 (인식되지 않는 필터 키는 무시)"""
        params = request.query_params

        try:
            limit = _parse_int(params.get("limit"), "limit", default_limit)
            offset = _parse_int(params.get("offset"), "offset", 0)
        except ValueError as e:
            return PlainTextResponse(f"Invalid pagination parameters: {e}", status_code=400)

        filters = {
            column: params.get(column)
            for column in FILTER_COLUMNS
            if params.get(column)
        }

        try:
            rows = await resources.store.query(filters, limit, offset)
        except ValueError as e:
            return PlainTextResponse(f"Invalid filter: {e}", status_code=400)
        except StoreError as e:
            logger.error(f"Failed to retrieve data: {e}")
            return PlainTextResponse(
                "Failed to retrieve data from PostgreSQL", status_code=500
            )

        if not rows:
            return JSONResponse({})
        return JSONResponse(rows)

    @router.post("/upload", tags=["Upload"])
    async def upload(file: Optional[UploadFile] = File(None)):
        """CSV 업로드 -> 줄마다 메시지 발행"""
        if file is None:
            return PlainTextResponse(
                "Failed to retrieve file: multipart field 'file' is required",
                status_code=400,
            )

        try:
            result = await resources.publisher.publish_upload(file)
        except MalformedRecordError as e:
            return PlainTextResponse(f"Malformed CSV record: {e}", status_code=400)
        except PublishError as e:
            return PlainTextResponse(
                f"Failed to publish line to broker: {e} ({e.published} lines published)",
                status_code=500,
            )
        except BrokerError as e:
            return PlainTextResponse(f"Failed to publish line to broker: {e}", status_code=500)
        except OSError as e:
            logger.error(f"Failed to read upload {file.filename}: {e}")
            return PlainTextResponse(f"Failed to read file: {e}", status_code=500)
        finally:
            await file.close()

        message = (
            f"File uploaded and processed in chunks, "
            f"{result.published} lines published successfully"
        )
        if result.malformed:
            message += f" ({result.malformed} malformed lines skipped)"
        return PlainTextResponse(message)

    return router


def create_app(
    channel: Optional[BrokerChannel] = None,
    store: Any = None,
    cache: Any = None,
    run_consumer: Optional[bool] = None,
) -> FastAPI:
    """
    앱 생성

    협력 객체를 넘기면 그대로 사용한다 (테스트).
    넘기지 않으면 설정으로 생성하고 lifespan에서 연결/종료한다.
    """
    config = get_config()
    owns_store = store is None
    owns_cache = cache is None

    channel = channel or BrokerChannel()
    store = store or PostgresWriter()
    cache = cache or RecordCache()
    run_consumer = config.api.run_consumer if run_consumer is None else run_consumer

    resources = AppResources(
        channel=channel,
        store=store,
        cache=cache,
        publisher=IngestPublisher(channel),
        consumer=RecordConsumer(channel, store, cache) if run_consumer else None,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """앱 시작 시 저장소 연결 + 컨슈머 시작, 종료 시 리소스 해제"""
        logger.info("Starting CSV Ingest API...")
        if owns_store:
            await store.start()

        if resources.consumer is not None:
            resources.consumer_task = asyncio.create_task(resources.consumer.run())
            resources.consumer_task.add_done_callback(_log_consumer_exit)

        logger.info("CSV Ingest API ready")
        yield

        logger.info("Shutting down CSV Ingest API...")
        if resources.consumer_task is not None:
            resources.consumer.stop()
            resources.consumer_task.cancel()
            try:
                await resources.consumer_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Consumer task ended with error: {e}")

        await channel.close()
        if owns_store:
            await store.stop()
        if owns_cache:
            cache.close()

    app = FastAPI(
        title="CSV Ingest API",
        description="CSV 업로드를 줄 단위 메시지로 발행하고 저장된 행을 조회합니다.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.resources = resources
    app.include_router(_build_router(resources, config.api.prefix, config.api.default_limit))

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health():
        """서비스 상태 확인"""
        db_ok = await store.ping()
        cache_ok = await asyncio.get_running_loop().run_in_executor(None, cache.test_connection)

        if resources.consumer is None:
            consumer_state = "disabled"
        elif resources.consumer.running:
            consumer_state = "running"
        else:
            consumer_state = "stopped"

        return HealthResponse(
            status="ok" if db_ok and cache_ok else "degraded",
            broker="connected" if channel.is_connected else "idle",
            db="connected" if db_ok else "error",
            cache="connected" if cache_ok else "error",
            consumer=consumer_state,
        )

    @app.get("/", tags=["System"])
    def root():
        return {
            "status": "ready",
            "message": "CSV Ingest API",
            "endpoints": {
                "data": f"GET {config.api.prefix}/data",
                "upload": f"POST {config.api.prefix}/upload",
                "health": "GET /health",
            },
        }

    return app
