from .event_dates import HOLIDAYS, resolve_birthday, resolve_custom, resolve_holiday
from .timing import PipelineTiming, as_utc, days_until, resolve_now, resolve_today

__all__ = [
    "HOLIDAYS",
    "PipelineTiming",
    "as_utc",
    "days_until",
    "resolve_birthday",
    "resolve_custom",
    "resolve_holiday",
    "resolve_now",
    "resolve_today",
]
