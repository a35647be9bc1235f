"""Pytest configuration and shared fixtures."""

import pytest

from klbupload.upload.policy import UploadPolicy

from fakes import FakeTransport


@pytest.fixture
def fake_transport():
    """Fresh scripted transport."""
    return FakeTransport()


@pytest.fixture
def fast_policy():
    """Policy with no retry backoff and the default concurrency ceiling."""
    return UploadPolicy(
        max_concurrency=3,
        max_attempts=5,
        backoff_seconds=0,
        backoff_max_seconds=0,
    )
