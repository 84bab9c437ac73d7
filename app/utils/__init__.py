from app.utils.clock import as_utc, seconds_between, utcnow
from app.utils.urls import append_query_params, normalize_origin

__all__ = [
    'as_utc',
    'seconds_between',
    'utcnow',
    'append_query_params',
    'normalize_origin',
]
