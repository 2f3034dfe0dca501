"""Exception hierarchy for the follow-up engine."""
from __future__ import annotations


class FollowupEngineError(Exception):
    """Base class for engine errors."""
    pass


class EventQueueError(FollowupEngineError):
    """A queue operation could not be applied."""
    pass


class EventNotFoundError(EventQueueError):
    def __init__(self, event_id: str):
        super().__init__(f"Event not found: {event_id}")
        self.event_id = event_id


class FollowupSendError(FollowupEngineError):
    """Raised when the agent send fails and the queue should retry."""
    pass


class InvalidScheduleError(FollowupEngineError, ValueError):
    """A sending_schedule window could not be parsed."""
    pass
