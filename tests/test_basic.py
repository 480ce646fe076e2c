"""Basic tests for tinydock.

These tests verify the package imports correctly and basic functionality works.
Tests that start processes live in the module-specific test files.
"""

import sys

import pytest


class TestImports:
    """Test that all modules can be imported."""

    def test_import_main_module(self):
        """Test that main module imports successfully."""
        import tinydock

        assert tinydock is not None

    def test_version_defined(self):
        """Test that version is defined."""
        from tinydock import __version__

        assert __version__ is not None
        assert isinstance(__version__, str)
        assert __version__ == "0.1.0"

    @pytest.mark.parametrize(
        "module",
        [
            "cache",
            "cli",
            "compose",
            "container",
            "dockerfile",
            "health",
            "image_builder",
            "logger",
            "metadata",
            "network",
            "orchestrator",
            "resolver",
            "shim",
            "utils",
            "volume",
        ],
    )
    def test_import_submodule(self, module):
        """Test each submodule imports."""
        import importlib

        assert importlib.import_module(f"tinydock.{module}") is not None

    def test_all_lists_submodules(self):
        """Test that __all__ names importable modules."""
        import importlib

        import tinydock

        for name in tinydock.__all__:
            assert importlib.import_module(f"tinydock.{name}") is not None


class TestPlatform:
    """Test platform requirements."""

    def test_python_version(self):
        """Test Python version requirement."""
        assert sys.version_info >= (3, 9), "Python 3.9+ required"


class TestStorage:
    """Test storage layout."""

    def test_storage_root_from_environment(self, storage_root):
        """Test TINYDOCK_ROOT selects the storage root."""
        from tinydock.utils import storage_root as get_root

        assert get_root() == str(storage_root)

    def test_ensure_directories(self, storage_root):
        """Test that all storage directories are created."""
        from tinydock.utils import ensure_directories

        ensure_directories()
        for name in ("containers", "images", "layers", "volumes", "networks"):
            assert (storage_root / name).is_dir()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
