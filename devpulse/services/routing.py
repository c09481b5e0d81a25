"""
Event classification and lane routing.

Every supported (event, action) pair is listed in SUPPORTED_ACTIONS. An event
whose category is not a member of EventCategory, or whose action is not listed,
is recorded as skipped. lane_for is total: any pair it has no rule for lands in
the default lane.
"""
import enum
from typing import Optional


class EventCategory(str, enum.Enum):
    PULL_REQUEST = "pull_request"
    PULL_REQUEST_REVIEW = "pull_request_review"
    CHECK_RUN = "check_run"
    CHECK_SUITE = "check_suite"
    WORKFLOW_RUN = "workflow_run"
    STATUS = "status"
    PUSH = "push"


class Lane(str, enum.Enum):
    HIGH = "high"
    DEFAULT = "default"
    LOW = "low"


ANY_ACTION = None

# None means every action (including events that carry no action) is accepted
SUPPORTED_ACTIONS: dict[EventCategory, Optional[frozenset[str]]] = {
    EventCategory.PULL_REQUEST: frozenset({"opened", "closed", "reopened", "synchronize", "edited"}),
    EventCategory.PULL_REQUEST_REVIEW: frozenset({"submitted", "edited", "dismissed"}),
    EventCategory.CHECK_RUN: frozenset({"completed", "rerequested"}),
    EventCategory.CHECK_SUITE: frozenset({"completed"}),
    EventCategory.WORKFLOW_RUN: frozenset({"completed"}),
    EventCategory.STATUS: ANY_ACTION,
    EventCategory.PUSH: ANY_ACTION,
}

_HIGH_LANE: dict[EventCategory, frozenset[str]] = {
    EventCategory.PULL_REQUEST: frozenset({"opened", "reopened", "closed"}),
    EventCategory.PULL_REQUEST_REVIEW: frozenset({"submitted"}),
}

_LOW_LANE_CATEGORIES = frozenset({EventCategory.PUSH, EventCategory.CHECK_SUITE})


def parse_category(event_type: str) -> Optional[EventCategory]:
    try:
        return EventCategory(event_type)
    except ValueError:
        return None


def classify(event_type: str, action: Optional[str]) -> Optional[EventCategory]:
    """Return the category when (event_type, action) is supported, else None."""
    category = parse_category(event_type)
    if category is None:
        return None
    allowed = SUPPORTED_ACTIONS[category]
    if allowed is ANY_ACTION:
        return category
    if action in allowed:
        return category
    return None


def lane_for(category: Optional[EventCategory], action: Optional[str]) -> Lane:
    """Pick the priority lane for an event. Unmapped pairs fall back to default."""
    if category is None:
        return Lane.DEFAULT
    if action in _HIGH_LANE.get(category, frozenset()):
        return Lane.HIGH
    if category in _LOW_LANE_CATEGORIES:
        return Lane.LOW
    return Lane.DEFAULT
