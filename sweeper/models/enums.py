from enum import Enum


class ServiceType(str, Enum):
    regular = "regular"
    deep = "deep"
    move_in_out = "move_in_out"
    airbnb = "airbnb"
    office = "office"
    commercial = "commercial"


class BookingStatus(str, Enum):
    pending = "pending"
    assigned = "assigned"
    en_route = "en_route"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class WorkerStatus(str, Enum):
    available = "available"
    en_route = "en_route"
    on_job = "on_job"
    on_break = "break"
    offline = "offline"


class AssignmentStatus(str, Enum):
    assigned = "assigned"
    en_route = "en_route"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class EventType(str, Enum):
    assignment_created = "assignment-created"
    eta_updated = "eta-updated"
