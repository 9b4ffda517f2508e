"""
Polling a stack until its current operation finishes.
"""

import logging
import re
import time
from datetime import datetime
from typing import Callable, Iterable, Optional

from .errors import StackDeployFailed
from .events import StackEvent
from .stack import Stack, StackController

logger = logging.getLogger(__name__)

IN_PROGRESS_RE = re.compile(r"^.*_IN_PROGRESS$")

DEPLOY_SUCCESS_STATUSES = frozenset({"CREATE_COMPLETE", "UPDATE_COMPLETE"})
DESTROY_SUCCESS_STATUSES = frozenset({"DELETE_COMPLETE"})


class StackMonitor:
    """Watch a stack, reporting new events, until it reaches a terminal status."""

    def __init__(
        self,
        controller: StackController,
        poll_interval: int = 10,
        on_event: Optional[Callable[[StackEvent], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize stack monitor.

        Args:
            controller: Controller used to describe the stack and read events
            poll_interval: Seconds to wait between polls
            on_event: Called once for each new event, oldest first
            sleep: Sleep function (replaceable in tests)
        """
        self.controller = controller
        self.session = controller.session
        self.poll_interval = poll_interval
        self.on_event = on_event or (lambda event: None)
        self.sleep = sleep

    def report_new_events(self, stack: Stack, after: datetime) -> datetime:
        """Report events newer than ``after`` and return the new cursor."""
        events = self.session.call_with_rotation(self.controller.list_events, stack, after)
        for event in events:
            self.on_event(event)
        if events:
            return events[-1].timestamp
        return after

    def wait(
        self,
        stack: Stack,
        after: datetime,
        success_statuses: Iterable[str] = DEPLOY_SUCCESS_STATUSES,
    ) -> str:
        """
        Poll until the stack leaves every ``*_IN_PROGRESS`` status.

        Expired credentials are renewed and the same call retried, so an
        operation that outlives its role session keeps being watched.

        Args:
            stack: Stack to watch; its ID must be known
            after: Event cursor; only later events are reported
            success_statuses: Terminal statuses that count as success

        Returns:
            The final stack status

        Raises:
            StackDeployFailed: The stack ended in any other terminal status
        """
        success_statuses = frozenset(success_statuses)
        cursor = after

        while True:
            info = self.session.call_with_rotation(self.controller.get_stack_info, stack)
            cursor = self.report_new_events(stack, cursor)

            status = info["StackStatus"]
            if status in success_statuses:
                logger.info(f"Stack {stack.stack_name} reached {status}")
                return status
            if not IN_PROGRESS_RE.match(status):
                raise StackDeployFailed(status)

            logger.debug(f"Stack {stack.stack_name} is {status}, polling again in {self.poll_interval}s")
            self.sleep(self.poll_interval)
