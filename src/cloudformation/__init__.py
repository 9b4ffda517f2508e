"""
CloudFormation stack lifecycle management.
"""

from .events import EventLogReader, StackEvent, format_event
from .monitor import StackMonitor
from .policy import StackPolicyPropagator
from .stack import DeployResult, Stack, StackController

__all__ = [
    "DeployResult",
    "EventLogReader",
    "Stack",
    "StackController",
    "StackEvent",
    "StackMonitor",
    "StackPolicyPropagator",
    "format_event",
]
