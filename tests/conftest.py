"""공용 pytest 픽스처"""

import pytest

from src.common.pipeline_config import reset_config


@pytest.fixture(autouse=True)
def fresh_config():
    """테스트마다 환경변수에서 설정 재생성"""
    config = reset_config()
    yield config
    reset_config()
