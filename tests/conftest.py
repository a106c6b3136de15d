"""
Pytest configuration for loopgate tests.
"""

import os
import sys

import pytest
import pytest_asyncio

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Keep tests away from the real ~/.loopgate and /etc/hosts
os.environ["LOOPGATE_LOG_LEVEL"] = "DEBUG"

SAMPLE_HOSTS = (
    "127.0.0.1 localhost\n"
    "::1 localhost ip6-localhost\n"
    "# 127.0.0.1 commented.example\n"
    "10.0.0.5 nas.lan\n"
)


@pytest.fixture
def hosts_file(tmp_path):
    """A scratch hosts file with a few foreign entries."""
    path = tmp_path / "hosts"
    path.write_text(SAMPLE_HOSTS, encoding="utf-8")
    return path


@pytest.fixture
def host_registry(hosts_file):
    """Provide a hosts registry over the scratch file."""
    from loopgate.hosts import HostRegistry
    return HostRegistry(str(hosts_file))


@pytest.fixture
def ca(tmp_path):
    """Provide a certificate authority with a small root key for speed."""
    from loopgate.certs import LocalCertificateAuthority
    return LocalCertificateAuthority(tmp_path / "certs", root_key_size=2048)


@pytest_asyncio.fixture
async def proxy_router(tmp_path):
    """Provide a proxy router bound to loopback, stopped after the test."""
    from loopgate.proxy import ProxyRouter
    router = ProxyRouter(tmp_path / "proxies.json", host="127.0.0.1", shutdown_timeout=1.0)
    yield router
    await router.stop_all()


@pytest.fixture
def test_settings(tmp_path, hosts_file):
    """Settings pointing every path into the test's temp directory."""
    from loopgate.config import Settings
    return Settings(
        data_dir=tmp_path / "data",
        hosts_file=str(hosts_file),
        proxy_host="127.0.0.1",
        root_key_size=2048,
        shutdown_timeout=1.0,
    )
