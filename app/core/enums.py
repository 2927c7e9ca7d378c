from enum import Enum


class PaymentStatus(str, Enum):
    active = "active"
    void = "void"


class SlipStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    declined = "declined"


class ActivityStatus(str, Enum):
    success = "success"
    failure = "failure"
    blocked = "blocked"
