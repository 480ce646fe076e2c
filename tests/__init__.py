"""
tinydock Test Suite
===================

This package contains unit tests for tinydock.

Test Categories:
    - test_basic.py: Import tests and basic functionality
    - test_dockerfile.py, test_compose.py: Parsing
    - test_resolver.py: Dependency ordering
    - test_image_builder.py: Builds and the layer cache
    - test_container.py, test_network.py, test_volume.py: Runtime
    - test_health.py: Healthchecks
    - test_orchestrator.py: Multi-service projects
    - test_cli.py: Command line interface

Running Tests:
    pytest tests/ -v

Note:
    Tests that start processes need a POSIX system with /bin/sh and are
    skipped elsewhere. Every test runs against a private storage root.
"""

import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
