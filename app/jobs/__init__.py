"""
WA Bridge Jobs Module

Contains background jobs and scheduled tasks.
"""

from app.jobs.instance_poller import (
    InstanceStatePoller,
    setup_poller_scheduler,
    get_scheduler_status,
)

__all__ = [
    "InstanceStatePoller",
    "setup_poller_scheduler",
    "get_scheduler_status",
]
