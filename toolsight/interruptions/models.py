"""
Interruption domain models.

An interruption is an open alert about a detected tool that asks the user
for a decision (keep, cancel, assign an owner). Resolution happens outside
the pipeline by setting resolved_at.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from toolsight.mailbox.models import parse_dt, utc_now


class InterruptionType(str, Enum):
    SILENT_RENEWAL = "silent_renewal"
    TRIAL_ENDING = "trial_ending"
    NO_OWNER = "no_owner"


class InterruptionPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"


class InterruptionAction(str, Enum):
    KEEP = "keep"
    CANCEL = "cancel"
    ASSIGN_OWNER = "assign_owner"


class Interruption(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str
    organization_id: str
    tool_id: str
    type: InterruptionType
    priority: InterruptionPriority
    message: str
    possible_actions: list[InterruptionAction] = Field(default_factory=list)
    triggered_at: datetime = Field(default_factory=utc_now)
    resolved_at: datetime | None = None

    @field_validator("possible_actions")
    @classmethod
    def dedupe_actions(cls, v: list[Any]) -> list[Any]:
        seen: list[Any] = []
        for action in v:
            if action not in seen:
                seen.append(action)
        return seen

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    def to_db_dict(self) -> dict[str, Any]:
        """Convert to dict for database storage."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "tool_id": self.tool_id,
            "type": self.type,
            "priority": self.priority,
            "message": self.message,
            "possible_actions": json.dumps(list(self.possible_actions)),
            "triggered_at": self.triggered_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Interruption:
        """Create Interruption from database row."""
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            tool_id=row["tool_id"],
            type=InterruptionType(row["type"]),
            priority=InterruptionPriority(row["priority"]),
            message=row["message"],
            possible_actions=json.loads(row["possible_actions"]) if row["possible_actions"] else [],
            triggered_at=parse_dt(row.get("triggered_at")) or utc_now(),
            resolved_at=parse_dt(row.get("resolved_at")),
        )
