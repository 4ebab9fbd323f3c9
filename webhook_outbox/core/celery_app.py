from celery import Celery

from webhook_outbox.config import settings

celery_app = Celery(
	"webhook_outbox",
	broker=settings.REDIS_URL,
	backend=settings.REDIS_URL,
)

celery_app.conf.update(
	task_time_limit=60 * 10,
	task_soft_time_limit=60 * 9,
	worker_max_tasks_per_child=1000,
	worker_prefetch_multiplier=1,   # ticks must not queue up behind each other
	result_expires=3600,
	include=["webhook_outbox.workers.scheduled_tasks"],
)
