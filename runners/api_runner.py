#!/usr/bin/env python3
"""
CSV Ingest API 서버 실행 스크립트

Usage:
    python runners/api_runner.py                     # 기본 (0.0.0.0:8080)
    python runners/api_runner.py --port 8081
    python runners/api_runner.py --no-consumer       # 컨슈머는 별도 프로세스로

Swagger UI: http://localhost:8080/docs
"""

import argparse
import logging
import os
import sys
from pathlib import Path

# 프로젝트 루트를 path에 추가
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import uvicorn
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="CSV Ingest API server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080)")
    parser.add_argument("--reload", action="store_true", help="Auto-reload on code change (dev only)")
    parser.add_argument("--no-consumer", action="store_true", help="Do not run the record consumer in this process")
    args = parser.parse_args()

    if args.no_consumer:
        os.environ["API_RUN_CONSUMER"] = "false"

    from src.common.pipeline_config import reset_config
    config = reset_config()

    logger.info("=" * 50)
    logger.info(f"Starting CSV Ingest API on http://{args.host}:{args.port}")
    logger.info(f"Kafka: {config.kafka.bootstrap_servers} (topic={config.topics.csv_rows})")
    logger.info(f"PostgreSQL: {config.postgres.host}:{config.postgres.port}/{config.postgres.database}")
    logger.info(f"Redis: {config.redis.host}:{config.redis.port}")
    logger.info(f"Consumer in process: {config.api.run_consumer}")
    logger.info("=" * 50)

    uvicorn.run(
        "src.api.server:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
