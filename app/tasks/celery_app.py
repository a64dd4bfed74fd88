from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from celery import Celery
from celery.signals import worker_ready

from app.core.config import settings
from app.core.logging_config import configure_logging


def _redis_url_for_celery(url: str) -> str:
    """rediss:// brokers (managed Redis with TLS) need ssl_cert_reqs in the URL."""
    if not url or not url.strip().lower().startswith("rediss://"):
        return url
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    if "ssl_cert_reqs" in qs:
        return url
    qs["ssl_cert_reqs"] = ["CERT_NONE"]
    return urlunparse(parsed._replace(query=urlencode(qs, doseq=True)))


configure_logging()

broker_url = _redis_url_for_celery(settings.REDIS_URL)

celery = Celery("rainbowpaws", broker=broker_url, backend=broker_url, include=["app.tasks.jobs"])
celery.conf.timezone = "Asia/Manila"
celery.conf.task_acks_late = True

EMAIL_QUEUE_INTERVAL = 120.0

celery.conf.beat_schedule = {
    "process-email-queue": {
        "task": "app.tasks.jobs.process_email_queue",
        "schedule": EMAIL_QUEUE_INTERVAL,
        "kwargs": {"limit": 50},
    },
}


# Flush mail that queued up while no worker was running
@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    from app.tasks.jobs import process_email_queue
    process_email_queue.delay()
