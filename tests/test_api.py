"""
CSV Ingest API 테스트
=====================

FastAPI TestClient + fake 협력 객체

Usage:
    pytest tests/test_api.py -v
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.api.server import create_app
from src.common.errors import BrokerConnectionError, StoreError
from src.common.pipeline_config import reset_config


class FakeChannel:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.calls = 0
        self.queue = []
        self.closed = False
        self.is_connected = True

    async def publish(self, queue, payload, key=None):
        self.calls += 1
        if self.calls == self.fail_on:
            raise BrokerConnectionError("connection reset by peer")
        self.queue.append(payload)

    async def close(self):
        self.closed = True


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def store():
    store = MagicMock()
    store.query = AsyncMock(return_value=[])
    store.ping = AsyncMock(return_value=True)
    return store


@pytest.fixture
def cache():
    cache = MagicMock()
    cache.test_connection.return_value = True
    return cache


@pytest.fixture
def client(channel, store, cache):
    app = create_app(channel=channel, store=store, cache=cache, run_consumer=False)
    with TestClient(app) as client:
        yield client


def upload(client, content: bytes):
    return client.post(
        "/api/v1/upload",
        files={"file": ("users.csv", content, "text/csv")},
    )


class TestUpload:
    """POST /api/v1/upload 테스트"""

    def test_upload_publishes_each_line(self, client, channel):
        """줄마다 메시지 발행"""
        response = upload(client, b"id,first_name\n1,Ann\n2,Bo\n")

        assert response.status_code == 200
        assert response.text == (
            "File uploaded and processed in chunks, 2 lines published successfully"
        )
        assert [json.loads(json.loads(p))["id"] for p in channel.queue] == ["1", "2"]

    def test_upload_reports_skipped_lines(self, client, channel):
        """건너뛴 줄 수 표시"""
        response = upload(client, b"id,first_name,last_name\n1,Ann,Lee\n3,Cy,\n")

        assert response.status_code == 200
        assert "1 lines published successfully" in response.text
        assert "(1 malformed lines skipped)" in response.text

    def test_missing_file_field(self, client):
        """file 필드 없음 -> 400"""
        response = client.post("/api/v1/upload", data={"other": "x"})

        assert response.status_code == 400
        assert "Failed to retrieve file" in response.text

    def test_publish_failure_returns_500(self, store, cache):
        """발행 실패 -> 500, 앞선 메시지는 남음"""
        channel = FakeChannel(fail_on=2)
        app = create_app(channel=channel, store=store, cache=cache, run_consumer=False)

        with TestClient(app) as client:
            response = upload(client, b"id\n1\n2\n3\n")

        assert response.status_code == 500
        assert "Failed to publish line to broker" in response.text
        assert len(channel.queue) == 1

    def test_strict_mode_rejects_malformed_upload(self, monkeypatch, channel, store, cache):
        """strict 모드 -> 400"""
        monkeypatch.setenv("INGEST_STRICT_COLUMNS", "true")
        reset_config()
        app = create_app(channel=channel, store=store, cache=cache, run_consumer=False)

        with TestClient(app) as client:
            response = upload(client, b"id,first_name,last_name\n3,Cy,\n")

        assert response.status_code == 400
        assert "Malformed CSV record" in response.text
        assert channel.queue == []


class TestData:
    """GET /api/v1/data 테스트"""

    def test_empty_result_is_empty_object(self, client):
        """결과 없음 -> {}"""
        response = client.get("/api/v1/data")

        assert response.status_code == 200
        assert response.json() == {}

    def test_returns_rows(self, client, store):
        """행 목록"""
        rows = [{"id": "1", "first_name": "Ann", "created_at": "2023-11-14 22:13:20"}]
        store.query.return_value = rows

        response = client.get("/api/v1/data")

        assert response.status_code == 200
        assert response.json() == rows
        store.query.assert_awaited_once_with({}, 100, 0)

    def test_filters_and_pagination(self, client, store):
        """인식되는 필터만 전달"""
        client.get("/api/v1/data?first_name=Ann&nickname=A&limit=5&offset=10")

        store.query.assert_awaited_once_with({"first_name": "Ann"}, 5, 10)

    @pytest.mark.parametrize("query", ["limit=abc", "limit=-1", "offset=-5"])
    def test_invalid_pagination(self, client, store, query):
        """잘못된 limit/offset -> 400"""
        response = client.get(f"/api/v1/data?{query}")

        assert response.status_code == 400
        store.query.assert_not_awaited()

    def test_invalid_timestamp_filter(self, client, store):
        """잘못된 시각 필터 -> 400"""
        store.query.side_effect = ValueError("Invalid timestamp filter: 'soon'")

        response = client.get("/api/v1/data?created_at=soon")

        assert response.status_code == 400

    def test_store_failure_returns_500(self, client, store):
        """조회 실패 -> 500"""
        store.query.side_effect = StoreError("connection refused")

        response = client.get("/api/v1/data")

        assert response.status_code == 500
        assert response.text == "Failed to retrieve data from PostgreSQL"


class TestSystem:
    """시스템 엔드포인트 테스트"""

    def test_health(self, client):
        """상태 확인"""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "broker": "connected",
            "db": "connected",
            "cache": "connected",
            "consumer": "disabled",
        }

    def test_health_degraded(self, client, store):
        """DB 오류 -> degraded"""
        store.ping.return_value = False

        assert client.get("/health").json()["status"] == "degraded"

    def test_shutdown_closes_channel(self, channel, store, cache):
        """종료 시 채널 닫기"""
        app = create_app(channel=channel, store=store, cache=cache, run_consumer=False)
        with TestClient(app):
            pass

        assert channel.closed is True
        cache.close.assert_not_called()
