"""Tests for the Redis client lifecycle and the limiter factory."""

from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ratekeeper import Limiter, TransportError, build_limiter, per_second
from ratekeeper.configs.config import AppConfig
from ratekeeper.configs.system import LimiterConfig, LoggingConfig, RedisConfig


def _config(logging: LoggingConfig | None = None, **limiter) -> AppConfig:
    return AppConfig.model_construct(
        redis=RedisConfig(uri="redis://limiter-test:6379/0"),
        limiter=LimiterConfig(**limiter),
        logging=logging or LoggingConfig(),
    )


@pytest.fixture
def fake_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    with patch("ratekeeper.infra.redis.Redis") as redis_cls:
        redis_cls.from_url.return_value = client
        yield redis_cls, client


class TestBuildLimiter:
    @pytest.mark.asyncio
    async def test_yields_ready_limiter(self, fake_client):
        redis_cls, client = fake_client
        await client.flushdb()
        await client.script_flush()

        async with build_limiter(_config(rate_key_prefix="svc:")) as limiter:
            assert isinstance(limiter, Limiter)
            assert limiter.registry.generation == 1
            assert (await limiter.allow("k", per_second(2))).allowed == 1
            assert await client.exists("svc:k") == 1

        redis_cls.from_url.assert_called_once()
        assert redis_cls.from_url.call_args.args == ("redis://limiter-test:6379/0",)
        assert redis_cls.from_url.call_args.kwargs["socket_timeout"] == 5.0

    @pytest.mark.asyncio
    async def test_lazy_script_loading(self, fake_client):
        async with build_limiter(_config(load_scripts_on_start=False)) as limiter:
            assert limiter.registry.generation == 0

    @pytest.mark.asyncio
    async def test_unreachable_redis(self):
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        client.aclose = AsyncMock()

        with patch("ratekeeper.infra.redis.Redis") as redis_cls:
            redis_cls.from_url.return_value = client
            with pytest.raises(TransportError):
                async with build_limiter(_config()):
                    pytest.fail("should not yield")

        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_root_logging_left_alone_by_default(self, fake_client):
        with patch("ratekeeper.limiter.setup_logging") as setup:
            async with build_limiter(_config(load_scripts_on_start=False)):
                pass
        setup.assert_not_called()

    @pytest.mark.asyncio
    async def test_root_logging_configured_on_request(self, fake_client):
        logging_config = LoggingConfig(level="DEBUG", configure_root=True)
        with patch("ratekeeper.limiter.setup_logging") as setup:
            async with build_limiter(
                _config(logging_config, load_scripts_on_start=False)
            ):
                pass
        setup.assert_called_once_with(logging_config)
