from app.core.models.registration import Registration
from app.core.models.registration_payment import RegistrationPayment
from app.core.models.activity_log import AdminActivityLog

__all__ = [
    "Registration",
    "RegistrationPayment",
    "AdminActivityLog",
]
