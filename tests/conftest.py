import io

import pytest
from rich.console import Console

from fakes import CONNECT_OK, ScriptedBackend, ScriptedStream, h2_response


@pytest.fixture
def out():
    """Console that records instead of printing."""
    return Console(file=io.StringIO(), width=200, color_system=None)


@pytest.fixture
def ok_stream():
    return ScriptedStream([CONNECT_OK] + h2_response())


@pytest.fixture
def ok_backend(ok_stream):
    return ScriptedBackend(ok_stream)
