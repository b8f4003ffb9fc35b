from choreledger.services import (
    notification_service,
    user_service,
    family_service,
)


__all__ = [
    "family_service",
    "notification_service",
    "user_service",
]
