from app.tasks.webhook_tasks import (
    deliver_integration_webhook,
    retry_webhook_deliveries,
    sweep_stale_usage_sessions,
    flush_api_key_usage,
)

__all__ = [
    'deliver_integration_webhook',
    'retry_webhook_deliveries',
    'sweep_stale_usage_sessions',
    'flush_api_key_usage',
]
