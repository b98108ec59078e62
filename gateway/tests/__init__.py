"""Test package for gateway unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
logging.getLogger("snapgrid").setLevel(logging.WARNING)
