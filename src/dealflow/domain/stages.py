from __future__ import annotations

from enum import Enum


class DealStage(str, Enum):
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    UNDER_CONTRACT = "UNDER_CONTRACT"
    IN_ESCROW = "IN_ESCROW"
    CLOSED_WON = "CLOSED_WON"
    CLOSED_LOST = "CLOSED_LOST"


# Stage -> Deal field stamped the first time the stage is entered.
FIRST_ENTER_FIELDS = {
    DealStage.QUALIFIED: "qualified_at",
    DealStage.UNDER_CONTRACT: "contract_at",
    DealStage.IN_ESCROW: "escrow_at",
    DealStage.CLOSED_WON: "closed_at",
    DealStage.CLOSED_LOST: "closed_at",
}


class LeadType(str, Enum):
    SFR = "sfr"
    LAND = "land"
    MULTI = "multi"
    OTHER = "other"


class ReminderStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    SENT = "sent"
    MISSED = "missed"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Statuses the due-scanner may still transition.
SCANNABLE_REMINDER_STATUSES = (ReminderStatus.PENDING.value, ReminderStatus.SCHEDULED.value)
# Statuses that are cancelled when the reminder target goes away.
ACTIVE_REMINDER_STATUSES = (ReminderStatus.PENDING.value, ReminderStatus.SENT.value)


class ReminderTarget(str, Enum):
    CALENDAR_EVENT = "calendar_event"
    TASK = "task"


class ReminderChannel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"


class CalendarEventStatus(str, Enum):
    SCHEDULED = "scheduled"
    MISSED = "missed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
