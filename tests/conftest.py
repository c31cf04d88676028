"""
Shared fixtures: dispatch helper and file factory
"""

import os
import tempfile

import pytest

# Keep TSV logs out of the source tree; must happen before the script is imported
os.environ.setdefault("SFB_LOG_DIR", tempfile.mkdtemp(prefix="sfb_logs_"))

import sft_coding_agent  # noqa: E402


@pytest.fixture
def agent():
    """The script module itself."""
    return sft_coding_agent


@pytest.fixture
def call():
    """Dispatch a tool through the envelope boundary and return its text."""

    def _call(name, **arguments):
        envelope = sft_coding_agent._handle_impl(name, arguments)
        return envelope["content"][0]["text"]

    return _call


@pytest.fixture
def make_file(tmp_path):
    """Create a file under tmp_path with exact bytes (no newline translation)."""

    def _make(name, content=""):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content.encode("utf-8"))
        return path

    return _make
