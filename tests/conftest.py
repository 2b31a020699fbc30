"""Pytest configuration for toolpipe."""
import os
import tempfile

import pytest


def pytest_configure():
    # Keep persisted settings and logs out of the real home directory.
    os.environ.setdefault("TOOLPIPE_DATA_DIR", tempfile.mkdtemp(prefix="toolpipe-tests-"))
    os.environ.setdefault("TOOLPIPE_TOOL_TIMEOUT", "30")


@pytest.fixture(autouse=True)
def fresh_settings():
    from toolpipe.config import set_config

    set_config(None)
    yield
    set_config(None)
