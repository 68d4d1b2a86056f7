"""Test helpers package for shared fakes."""

from tests.helpers.fake_connection import (
    THREE_FILES,
    FakeConnection,
    build_migrations,
    normalize,
)

__all__ = [
    "THREE_FILES",
    "FakeConnection",
    "build_migrations",
    "normalize",
]
