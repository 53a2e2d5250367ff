"""
Pytest fixtures for sigprint tests.
"""

from __future__ import annotations

import logging

import pytest
from click.testing import CliRunner

from sigprint import LOGGER_NAME

ALICE = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
ALICE_CHECKSUM = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


@pytest.fixture(autouse=True)
def unconfigured_logging():
    """Each test starts with sigprint logging as a library caller would find it."""
    logger = logging.getLogger(LOGGER_NAME)

    def reset():
        logger.handlers[:] = []
        logger.setLevel(logging.NOTSET)
        logger.propagate = True

    reset()
    yield
    reset()


@pytest.fixture
def store_path(tmp_path):
    return str(tmp_path / "history.json")


@pytest.fixture
def runner():
    return CliRunner()
