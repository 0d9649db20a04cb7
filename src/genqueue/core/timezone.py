"""UTC timezone enforcement and naive-UTC timestamps.

Importing this module sets TZ=UTC for the process. Database columns are
``timestamp without time zone`` holding UTC, so ``utcnow()`` returns naive UTC.
"""

import os
from datetime import UTC, datetime

os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Current UTC time without tzinfo (matches stored column values)."""
    return datetime.now(UTC).replace(tzinfo=None)
