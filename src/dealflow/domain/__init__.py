from dealflow.domain.errors import (
    ConflictError,
    DomainError,
    InvalidStageError,
    NotFoundError,
    StorageFailure,
)
from dealflow.domain.models import CalendarEvent, Deal, Lead, Reminder, StageChange
from dealflow.domain.rules import ValidationError

__all__ = [
    "CalendarEvent",
    "ConflictError",
    "Deal",
    "DomainError",
    "InvalidStageError",
    "Lead",
    "NotFoundError",
    "Reminder",
    "StageChange",
    "StorageFailure",
    "ValidationError",
]
