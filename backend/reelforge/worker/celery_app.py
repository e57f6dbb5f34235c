"""
Celery application for the job lanes.

Broker/backend: Redis (REDIS_URL env).
One queue per lane; run a worker per lane with its own concurrency, e.g.
    celery -A reelforge.worker.celery_app worker -Q render -c 1
"""
from celery import Celery
from kombu import Queue

from reelforge.settings import get_settings

settings = get_settings()

LANES = ("intake", "analysis", "extraction", "render", "publish")

celery_app = Celery(
    "reelforge",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_time_limit=2 * 3600,        # 2 hours hard limit
    task_soft_time_limit=90 * 60,    # 90 minutes soft limit
    task_default_queue="intake",
    task_queues=[Queue(lane) for lane in LANES],
    task_routes={f"reelforge.{lane}": {"queue": lane} for lane in LANES},
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # visibility_timeout MUST be > task_time_limit and the longest publish
    # delay, otherwise Redis redelivers the message while it is still owned.
    broker_transport_options={"visibility_timeout": 7 * 24 * 3600},
)

celery_app.autodiscover_tasks(["reelforge.worker"])
