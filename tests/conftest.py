"""Configure pytest fixtures and environment for Prism tests."""

import logging

import pytest
import structlog

from fakes import FakeClock, make_settings


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep structured log output out of captured test output."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock():
    return FakeClock(1_000.0)


@pytest.fixture
def settings():
    return make_settings()
