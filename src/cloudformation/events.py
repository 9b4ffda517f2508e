"""
Reading a stack's event history in chronological order.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import MissingStackID

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _aware(timestamp: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp


@dataclass(frozen=True)
class StackEvent:
    """A single CloudFormation stack event."""

    logical_resource_id: str
    resource_type: str
    resource_status: str
    timestamp: datetime
    physical_resource_id: Optional[str] = None
    resource_status_reason: Optional[str] = None

    @classmethod
    def from_api(cls, event: Dict[str, Any]) -> "StackEvent":
        """Create an event from a DescribeStackEvents record."""
        return cls(
            logical_resource_id=event["LogicalResourceId"],
            resource_type=event["ResourceType"],
            resource_status=event["ResourceStatus"],
            timestamp=_aware(event["Timestamp"]),
            physical_resource_id=event.get("PhysicalResourceId") or None,
            resource_status_reason=event.get("ResourceStatusReason") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Display record, in the field names of the CloudFormation API."""
        record: Dict[str, Any] = {"LogicalResourceId": self.logical_resource_id}
        if self.physical_resource_id:
            record["PhysicalResourceId"] = self.physical_resource_id
        record["ResourceStatus"] = self.resource_status
        if self.resource_status_reason:
            record["ResourceStatusReason"] = self.resource_status_reason
        record["ResourceType"] = self.resource_type
        record["Timestamp"] = self.timestamp.astimezone().isoformat()
        return record


def format_event(event: StackEvent) -> str:
    """Render an event as indented JSON for the operator."""
    return json.dumps(event.to_dict(), indent=2)


class EventLogReader:
    """Fetch stack events through a credential session."""

    def __init__(self, session):
        """
        Initialize event reader.

        Args:
            session: CredentialSession providing the CloudFormation client
        """
        self.session = session

    def list_events(self, stack_id: Optional[str], after: datetime = EPOCH) -> List[StackEvent]:
        """
        Get all events of a stack newer than ``after``, oldest first.

        CloudFormation returns events newest first, with no ordering
        guarantee across pages, so the whole result is sorted.

        Args:
            stack_id: ID of the stack (a name is not accepted)
            after: Only events with a later timestamp are returned

        Raises:
            MissingStackID: stack_id is empty
        """
        if not stack_id:
            raise MissingStackID()

        after = _aware(after)
        events = []
        paginator = self.session.cloudformation.get_paginator("describe_stack_events")
        for page in paginator.paginate(StackName=stack_id):
            for raw in page.get("StackEvents", []):
                event = StackEvent.from_api(raw)
                if event.timestamp > after:
                    events.append(event)

        events.sort(key=lambda e: e.timestamp)
        logger.debug(f"Found {len(events)} events for {stack_id} after {after.isoformat()}")
        return events

    def get_last_event_time(self, stack_id: Optional[str]) -> datetime:
        """Get the timestamp of the newest event, or the epoch if there are none."""
        events = self.list_events(stack_id, EPOCH)
        if not events:
            return EPOCH
        return events[-1].timestamp
