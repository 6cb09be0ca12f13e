import io

import pytest

from shipci.artifacts import ArtifactStore
from shipci.model import TriggerContext
from shipci.ui.console import Console, set_console


@pytest.fixture
def console():
    return Console(stream=io.StringIO())


@pytest.fixture(autouse=True)
def quiet_console(console):
    # keep the global console (used by get_console()) off the real stdout
    set_console(console)
    yield console


@pytest.fixture
def output(console):
    """Everything the console wrote so far."""
    return lambda: console._stream.getvalue()


@pytest.fixture
def artifacts():
    return ArtifactStore()


@pytest.fixture
def tag_push():
    return TriggerContext(ref="refs/tags/v1.0.0", sha="a" * 40)


@pytest.fixture
def branch_push():
    return TriggerContext(ref="refs/heads/main", sha="b" * 40)
