from celery import Celery

from cryobank.config import settings

celery = Celery(
    "cryobank",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "expire-overdue-samples": {
            "task": "cryobank.tasks.expiry.expire_overdue_samples",
            "schedule": settings.EXPIRY_CHECK_INTERVAL_MINUTES * 60,
        },
    },
)

celery.autodiscover_tasks(["cryobank.tasks"], related_name="expiry")
