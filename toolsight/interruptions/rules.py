"""
Interruption Rule Engine.

Runs once per connection after a scan. For each active tool without an open
interruption, the rules are evaluated in order and the first that fires is
recorded:

    1. silent_renewal / high   renewal_count >= 6 and the user never touched it
    2. trial_ending / urgent   estimated renewal within the next 7 days
    3. no_owner / medium       owner unconfirmed and renewal_count >= 3

A tool holds at most one open interruption regardless of type. The partial
unique index on interruptions(tool_id) enforces the same rule at the store.
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from toolsight.config import (
    INTERRUPTION_NO_OWNER_MIN_RENEWALS,
    INTERRUPTION_SILENT_RENEWAL_MIN_RENEWALS,
    INTERRUPTION_TRIAL_WINDOW_DAYS,
)
from toolsight.interruptions.models import (
    Interruption,
    InterruptionAction,
    InterruptionPriority,
    InterruptionType,
)
from toolsight.interruptions.repository import InterruptionRepository
from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter, log_event
from toolsight.tools.models import DetectedTool, OwnershipStatus, ToolStatus
from toolsight.tools.repository import DetectedToolRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class InterruptionPolicy:
    """Organization thresholds for the interruption rules."""

    silent_renewal_min_renewals: int = INTERRUPTION_SILENT_RENEWAL_MIN_RENEWALS
    trial_window_days: int = INTERRUPTION_TRIAL_WINDOW_DAYS
    no_owner_min_renewals: int = INTERRUPTION_NO_OWNER_MIN_RENEWALS


@dataclass(frozen=True)
class RuleMatch:
    type: InterruptionType
    priority: InterruptionPriority
    message: str
    actions: tuple[InterruptionAction, ...]


class InterruptionRuleEngine:
    def __init__(
        self,
        policy: InterruptionPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.policy = policy or InterruptionPolicy()
        self._clock = clock or (lambda: datetime.now(UTC))

    def evaluate(self, tool: DetectedTool, now: datetime | None = None) -> RuleMatch | None:
        """Return the first rule that fires for a tool, ignoring existing interruptions."""
        if tool.status != ToolStatus.ACTIVE.value:
            return None

        today = (now or self._clock()).astimezone(UTC).date()
        policy = self.policy

        if tool.renewal_count >= policy.silent_renewal_min_renewals and (
            tool.last_interaction_date is None
        ):
            return RuleMatch(
                type=InterruptionType.SILENT_RENEWAL,
                priority=InterruptionPriority.HIGH,
                message=f"{tool.vendor_name} has renewed {tool.renewal_count} times "
                "without any interaction",
                actions=(
                    InterruptionAction.KEEP,
                    InterruptionAction.CANCEL,
                    InterruptionAction.ASSIGN_OWNER,
                ),
            )

        renewal = tool.estimated_renewal_date
        if renewal is not None and today <= renewal <= today + timedelta(
            days=policy.trial_window_days
        ):
            days = (renewal - today).days
            return RuleMatch(
                type=InterruptionType.TRIAL_ENDING,
                priority=InterruptionPriority.URGENT,
                message=f"{tool.vendor_name} renews in {days} days",
                actions=(InterruptionAction.KEEP, InterruptionAction.CANCEL),
            )

        if (
            tool.owner_confirmation_status == OwnershipStatus.UNCONFIRMED.value
            and tool.renewal_count >= policy.no_owner_min_renewals
        ):
            return RuleMatch(
                type=InterruptionType.NO_OWNER,
                priority=InterruptionPriority.MEDIUM,
                message=f"{tool.vendor_name} has no confirmed owner",
                actions=(InterruptionAction.ASSIGN_OWNER,),
            )

        return None

    def generate_interruptions(
        self, organization_id: str, now: datetime | None = None
    ) -> list[Interruption]:
        """
        Create interruptions for an organization's active tools.

        Returns:
            The interruptions created by this pass (empty when nothing fired).

        Side Effects:
            - Inserts rows into interruptions
            - Logs and skips a tool whose insert fails
        """
        now = now or self._clock()
        tools = DetectedToolRepository.list_by_organization(organization_id, ToolStatus.ACTIVE)
        open_tool_ids = InterruptionRepository.open_tool_ids(organization_id)

        created: list[Interruption] = []
        for tool in tools:
            if tool.id in open_tool_ids:
                continue

            match = self.evaluate(tool, now)
            if match is None:
                continue

            interruption = Interruption(
                id=str(uuid.uuid4()),
                organization_id=organization_id,
                tool_id=tool.id,
                type=match.type,
                priority=match.priority,
                message=match.message,
                possible_actions=list(match.actions),
                triggered_at=now,
            )
            try:
                InterruptionRepository.create(interruption)
            except sqlite3.IntegrityError as e:
                counter("interruptions.duplicate_skipped")
                logger.info("Tool %s already has an open interruption: %s", tool.id, e)
                continue
            except sqlite3.Error as e:
                counter("interruptions.create_failed")
                logger.error("Failed to create interruption for tool %s: %s", tool.id, e)
                continue

            counter(f"interruptions.{match.type.value}")
            created.append(interruption)

        if created:
            log_event(
                "interruptions.generated",
                organization_id=organization_id,
                count=len(created),
            )
        return created
