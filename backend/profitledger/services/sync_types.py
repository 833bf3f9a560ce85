"""Result type shared by the sync step services."""

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class SyncStepResult:
    """Statistics from one successful sync step.

    Failures are raised (UpstreamFetchError, PersistenceError), never returned.
    """
    days_written: int = 0
    rows_written: int = 0
    skipped: bool = False
    stats: Dict[str, Any] = field(default_factory=dict)
