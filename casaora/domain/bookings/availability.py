"""Professional availability collaborator"""

from datetime import datetime
from typing import Protocol


class AvailabilityChecker(Protocol):
    def is_available(self, professional_id: str, start: datetime, end: datetime) -> bool: ...


class AlwaysAvailable:
    """Default checker until the scheduling service is wired in"""

    def is_available(self, professional_id: str, start: datetime, end: datetime) -> bool:
        return True
