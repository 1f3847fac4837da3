from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware current time, the default clock of every controller."""
    return datetime.now(timezone.utc)
