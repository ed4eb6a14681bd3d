from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown
from exam_integrity.core.config import settings
import logging
import asyncio

logging.getLogger('celery.backends.redis').setLevel(logging.ERROR)

# one event loop per worker process, reused by every async task body
_WORKER_LOOP = None


@worker_process_init.connect
def init_async_loop(**kwargs):
    global _WORKER_LOOP
    _WORKER_LOOP = asyncio.new_event_loop()
    asyncio.set_event_loop(_WORKER_LOOP)
    logging.info(f"Initialized asyncio event loop for worker process {kwargs.get('sender', 'unknown')}")


@worker_process_shutdown.connect
def shutdown_async_loop(**kwargs):
    global _WORKER_LOOP
    if _WORKER_LOOP:
        _WORKER_LOOP.close()
        _WORKER_LOOP = None
        asyncio.set_event_loop(None)
        logging.info("Closed asyncio event loop for worker process")


def run_async(coro):
    """Run a coroutine on the worker's loop, or on a throwaway loop outside a worker."""
    if _WORKER_LOOP is not None and not _WORKER_LOOP.is_closed():
        return _WORKER_LOOP.run_until_complete(coro)
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


celery_app = Celery(
    "exam_integrity_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        'exam_integrity.tasks.maintenance',
    ]
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,

    task_soft_time_limit=300,
    task_time_limit=600,

    result_expires=3600,
    broker_connection_retry_on_startup=True,

    task_default_retry_delay=60,

    beat_schedule={
        'expire-overdue-attempts': {
            'task': 'expire_overdue_attempts',
            'schedule': 60.0,
        },
        'purge-stale-heartbeats': {
            'task': 'purge_stale_heartbeats',
            'schedule': 3600.0,
        },
        'health-check': {
            'task': 'health_check',
            'schedule': 600.0,
        },
    },
)

if __name__ == '__main__':
    celery_app.start()
