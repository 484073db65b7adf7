"""
Pytest configuration for the maintenance manager test suite.
"""

import os
import shutil
import ssl
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


def pytest_configure(config):
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "maintenance_project.settings")
    import django

    django.setup()


@pytest.fixture
def redis_client():
    """MagicMock standing in for redis.Redis; scripts are separate mocks keyed by registration order."""
    client = MagicMock()
    scripts = []

    def _register_script(source):
        script = MagicMock(name=f"script{len(scripts)}")
        script.source = source
        scripts.append(script)
        return script

    client.register_script.side_effect = _register_script
    client.scripts = scripts
    return client


TEST_DATA = Path(__file__).parent / "data"


@pytest.fixture
def tls_pair(tmp_path):
    """Self-signed localhost certificate laid out the way OLM injects it: (cert_dir, cert_name, key_name)."""
    cert_dir = tmp_path / "certificates"
    cert_dir.mkdir()
    shutil.copy(TEST_DATA / "tls.crt", cert_dir / "apiserver.crt")
    shutil.copy(TEST_DATA / "tls.key", cert_dir / "apiserver.key")
    return str(cert_dir), "apiserver.crt", "apiserver.key"


@pytest.fixture
def tls_client():
    """Builds client contexts that trust any server certificate, optionally offering ALPN protocols."""

    def _build(alpn=None):
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        if alpn:
            ctx.set_alpn_protocols(alpn)
        return ctx

    return _build
