import json
import sys
from pathlib import Path

import pytest

# Modules live in src/ without a package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fs_mcp_server import OperationDispatcher
from sandbox import AllowedRoots, PathGuard


@pytest.fixture
def workspace(tmp_path):
    """An allowed root; resolved so comparisons survive /tmp symlinks."""
    root = tmp_path / "workspace"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def outside(tmp_path):
    """A directory next to the workspace that is not allowed."""
    other = tmp_path / "outside"
    other.mkdir()
    (other / "secret.txt").write_text("top secret")
    return other.resolve()


@pytest.fixture
def guard(workspace):
    return PathGuard(AllowedRoots.from_args([str(workspace)]))


@pytest.fixture
def dispatcher(guard):
    return OperationDispatcher(guard)


def error_payload(result) -> dict:
    """Decode the JSON body of an error response."""
    assert result.isError is True
    return json.loads(result.content[0].text)
