from __future__ import annotations

import logging
from typing import Iterator

import pytest


@pytest.fixture(autouse=True)
def quiet_issuepilot_logger() -> Iterator[None]:
    # Handlers bound to a capsys stream outlive the test otherwise.
    yield
    logger = logging.getLogger("issuepilot")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.addHandler(logging.NullHandler())
