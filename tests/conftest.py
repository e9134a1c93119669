# SPDX-License-Identifier: LGPL-3.0-or-later
import logging
import os
import sys
from pathlib import Path

import pytest

_THIS_DIR = Path(__file__).resolve().parent
_REPO_ROOT = _THIS_DIR.parent

for p in (_REPO_ROOT, _THIS_DIR):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

os.environ.setdefault("PYTHONPATH", str(_REPO_ROOT))

from fakes.fake_host import FakeSupervisor, FakeWindowsHost  # noqa: E402
from imgtailor.core.context import RunContext  # noqa: E402
from imgtailor.core.retry import no_sleep  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without external tools")
    config.addinivalue_line("markers", "slow: spawns real subprocesses and waits on them")


@pytest.fixture
def logger():
    lg = logging.getLogger("itest")
    lg.setLevel(logging.DEBUG)
    return lg


@pytest.fixture
def host():
    return FakeWindowsHost()


@pytest.fixture
def supervisor(host):
    return FakeSupervisor(host)


@pytest.fixture
def ctx(tmp_path, logger, supervisor):
    c = RunContext(logger=logger, workdir=tmp_path / "work", supervisor=supervisor, sleep=no_sleep)
    c.ensure_dirs()
    return c


@pytest.fixture
def wim(tmp_path):
    p = tmp_path / "install.wim"
    p.write_bytes(b"MSWIM\x00\x00\x00")
    return p
