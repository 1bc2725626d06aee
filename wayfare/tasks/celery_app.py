from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from celery import Celery
from celery.signals import setup_logging
from wayfare.core.config import settings
from wayfare.core.logging import configure_logging


def _redis_url_for_celery(url: str) -> str:
    """Celery requires ssl_cert_reqs for rediss:// (e.g. Upstash TLS)."""
    if not url or not url.strip().lower().startswith("rediss://"):
        return url
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    if "ssl_cert_reqs" not in qs:
        qs["ssl_cert_reqs"] = ["CERT_NONE"]
        new_query = urlencode(qs, doseq=True)
        return urlunparse(parsed._replace(query=new_query))
    return url


_redis_url = _redis_url_for_celery(settings.REDIS_URL)

celery = Celery(
    "wayfare",
    broker=_redis_url,
    backend=_redis_url,
    include=["wayfare.tasks.jobs"],
)

celery.conf.timezone = "UTC"


@setup_logging.connect
def on_setup_logging(**kwargs):
    configure_logging()


celery.conf.beat_schedule = {
    "reconcile-pending-items": {
        "task": "wayfare.tasks.jobs.reconcile_pending_items",
        "schedule": settings.RECONCILIATION_INTERVAL_SECONDS,
    },
    "sync-confirmed-items": {
        "task": "wayfare.tasks.jobs.sync_confirmed_items",
        "schedule": settings.SCHEDULE_SYNC_INTERVAL_SECONDS,
    },
    "retry-failed-captures": {
        "task": "wayfare.tasks.jobs.retry_failed_captures",
        "schedule": settings.CAPTURE_RETRY_INTERVAL_SECONDS,
        "kwargs": {"limit": 50},
    },
    "expire-checkout-sessions-every-minute": {
        "task": "wayfare.tasks.jobs.expire_checkout_sessions",
        "schedule": 60.0,
    },
    "abandon-expired-carts-every-10-minutes": {
        "task": "wayfare.tasks.jobs.abandon_expired_carts",
        "schedule": 600.0,
    },
    "complete-finished-bookings-hourly": {
        "task": "wayfare.tasks.jobs.complete_finished_bookings",
        "schedule": 3600.0,
    },
    "deliver-notifications-every-2-minutes": {
        "task": "wayfare.tasks.jobs.deliver_notifications",
        "schedule": 120.0,
        "kwargs": {"limit": 50},
    },
}
