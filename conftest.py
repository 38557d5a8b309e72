"""
Pytest configuration for the CHIP-8 test suite.

    python -m pytest                 # everything that can run here
    python -m pytest -m "not display"

Tests marked ``display`` open a real pygame window; they are skipped when
pygame is missing or no video device is available.
"""

import os
import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "display: tests that open a pygame window (skipped without a display)")


def _display_available() -> bool:
    try:
        import pygame
    except ImportError:
        return False
    if os.environ.get("SDL_VIDEODRIVER") == "dummy":
        return True
    try:
        pygame.display.init()
    except pygame.error:
        return False
    pygame.display.quit()
    return True


def pytest_collection_modifyitems(config, items):
    marked = [item for item in items if "display" in item.keywords]
    if not marked or _display_available():
        return
    skip = pytest.mark.skip(reason="pygame display not available")
    for item in marked:
        item.add_marker(skip)
