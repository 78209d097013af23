"""
Pytest configuration and shared fixtures for prodrun tests.
"""

import pytest
import asyncio
import inspect
import tempfile
import shutil
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Generator, Optional
from unittest import mock

from aiohttp.test_utils import make_mocked_request

# Add src to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from prodrun.app import App
from prodrun.managers.registry import RequestRegistry
from prodrun.utils.config import ProdrunConfig, RuntimeConfig
from prodrun.utils.metrics import MetricsCollector


# Test configuration
TEST_CONFIG = {
    "runtime": {
        "watchdog_secs": 3600,
        "graceful_poll_msecs": 10,
        "graceful_wait_secs": 1,
        "slow_req_secs": 10,
    },
    "server": {
        "listen_host": "127.0.0.1",
        "listen_port": 0,
        "enable_status_urls": True,
        "hostname": "testhost",
    },
    "logging": {
        "level": "DEBUG",
        "format": "console",
    },
}


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def runtime_overrides() -> Dict[str, Any]:
    """Per-test runtime options; override in a test module to change them."""
    return {}


@pytest.fixture
def test_config(runtime_overrides: Dict[str, Any]) -> ProdrunConfig:
    """Create test configuration."""
    runtime = dict(TEST_CONFIG["runtime"], **runtime_overrides)
    return ProdrunConfig(
        project_name="testproj",
        app_name="testapp",
        runtime=RuntimeConfig(**runtime),
        server=TEST_CONFIG["server"],
        logging=TEST_CONFIG["logging"],
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector(prefix="testproj.testapp.testhost")


@pytest.fixture
async def registry(test_config: ProdrunConfig, metrics: MetricsCollector):
    """A started request registry with a mock restart trigger."""
    reg = RequestRegistry(test_config, metrics=metrics, restart_trigger=mock.Mock(name="restart_trigger"))
    await reg.start()
    yield reg
    await reg.stop()


async def _never_exits() -> int:
    await asyncio.Event().wait()
    return 0


def fake_spawner() -> mock.AsyncMock:
    """Spawner whose replacement process never exits on its own."""
    return mock.AsyncMock(name="spawner", return_value=mock.Mock(pid=4242, wait=_never_exits))


@pytest.fixture
def make_app(runtime_overrides: Dict[str, Any]) -> Callable[..., App]:
    """Build an App with test config and no global logging setup."""
    def factory(**config_overrides: Any) -> App:
        config = {
            "runtime": dict(TEST_CONFIG["runtime"], **runtime_overrides),
            "server": dict(TEST_CONFIG["server"]),
            "logging": dict(TEST_CONFIG["logging"]),
        }
        for section, values in config_overrides.items():
            config.setdefault(section, {}).update(values)
        return App(
            "testproj",
            "testapp",
            config=config,
            configure_logging=False,
            spawner=fake_spawner(),
            exit_func=mock.Mock(name="exit_func"),
        )
    return factory


def mocked_request(
    method: str = "GET",
    path: str = "/",
    headers: Optional[Dict[str, str]] = None,
    peer: tuple = ("10.1.2.3", 5555),
):
    """An aiohttp request whose transport reports ``peer``."""
    transport = mock.Mock()
    transport.get_extra_info.side_effect = lambda key, default=None: {"peername": peer}.get(key, default)
    return make_mocked_request(method, path, headers=headers or {}, transport=transport)


@pytest.fixture
def request_factory() -> Callable[..., Any]:
    return mocked_request


async def wait_for_condition(
    condition: Callable[[], Any],
    timeout: float = 5.0,
    interval: float = 0.01
) -> bool:
    """Wait for a (sync or async) condition to become true."""
    loop = asyncio.get_running_loop()
    start = loop.time()

    while loop.time() - start < timeout:
        result = condition()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return True
        await asyncio.sleep(interval)

    return False


@pytest.fixture
def wait_for() -> Callable[..., Awaitable[bool]]:
    return wait_for_condition
