"""
tinydock: a small container build and run orchestrator.

This package implements:
- A Dockerfile parser and an image builder with a content-addressed
  layer cache
- A Compose-style project loader with dependency ordering
- Supervised container processes with logical networks, named volumes,
  healthchecks and restart policies
- Multi-service orchestration (up, down, logs, ps)

Containers are plain host processes running in a private copy of their
image's root filesystem; there is no kernel-level isolation.

License: MIT
"""

__version__ = "0.1.0"
__all__ = [
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
    "utils",
    "volume",
]
