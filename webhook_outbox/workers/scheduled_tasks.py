import asyncio
import logging
from collections import Counter

import httpx

from webhook_outbox.config import settings
from webhook_outbox.core.celery_app import celery_app
from webhook_outbox.database import build_engine, build_session_factory
from webhook_outbox.workers.outbox_worker import build_worker

logger = logging.getLogger(__name__)

# Configure periodic tasks
celery_app.conf.beat_schedule = {
	'deliver-outbox': {
		'task': 'webhook_outbox.workers.scheduled_tasks.deliver_outbox',
		'schedule': settings.OUTBOX_BEAT_INTERVAL_SECONDS,
		'options': {'expires': settings.OUTBOX_BEAT_INTERVAL_SECONDS * 2},
	},
}


@celery_app.task(name="webhook_outbox.workers.scheduled_tasks.deliver_outbox")
def deliver_outbox():
	"""Run a single outbox tick"""
	loop = asyncio.new_event_loop()
	asyncio.set_event_loop(loop)
	try:
		return loop.run_until_complete(_deliver_outbox_async())
	finally:
		loop.close()


async def _deliver_outbox_async():
	# Engines are bound to the loop that created them, so each run gets its own
	engine = build_engine(settings.DATABASE_URL)
	try:
		async with httpx.AsyncClient() as http_client:
			worker = build_worker(build_session_factory(engine), http_client, settings.outbox_config())
			observations = await worker.tick()
	finally:
		await engine.dispose()

	summary = dict(Counter(o.status for o in observations))
	logger.info(f"Outbox tick: {len(observations)} attempt(s) {summary}")
	return {"attempts": len(observations), "statuses": summary}
