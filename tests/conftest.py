"""Shared fixtures for the tinydock test suite."""

import pytest


@pytest.fixture(autouse=True)
def storage_root(tmp_path, monkeypatch):
    """Point every test at a private storage root."""
    root = tmp_path / "tinydock-root"
    monkeypatch.setenv("TINYDOCK_ROOT", str(root))
    return root


@pytest.fixture
def context(tmp_path):
    """An empty build context directory."""
    path = tmp_path / "context"
    path.mkdir()
    return path
