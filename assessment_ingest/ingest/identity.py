"""Identifier assignment for ingested records."""

import uuid
from typing import Callable

IdFactory = Callable[[], str]


def new_id() -> str:
    """Return a fresh, globally unique identifier (UUID v4)."""
    return str(uuid.uuid4())
