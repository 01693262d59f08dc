"""Shared fixtures."""

from __future__ import annotations

import pytest

from tests.fakes import make_image_bytes


@pytest.fixture()
def image_bytes() -> bytes:
    """A small, valid PNG upload."""
    return make_image_bytes()
