from django.conf import settings
from django.core.exceptions import ValidationError


def min_poll_interval_seconds() -> int:
    return int(getattr(settings, "EMAIL_SYNC_MIN_POLL_INTERVAL_SECONDS", 60))


def validate_polling_interval(value: int) -> None:
    """Reject polling intervals below the configured floor."""
    floor = min_poll_interval_seconds()
    if value is None or value < floor:
        raise ValidationError(
            "Polling interval %(value)ss is below the minimum of %(floor)ss.",
            code="polling_interval_too_low",
            params={"value": value, "floor": floor},
        )
