import asyncio
import signal

import httpx

from webhook_outbox.config import settings
from webhook_outbox.core.logging import configure_logging
from webhook_outbox.database import AsyncSessionLocal, close_db
from webhook_outbox.workers.outbox_worker import build_worker


async def run_outbox_worker():
	"""Run the delivery loop as a standalone process"""
	log = configure_logging("webhook_outbox.worker", settings.LOG_LEVEL)
	config = settings.outbox_config()
	log.info(
		f"Starting outbox worker (batch={config.batch_size}, max_attempts={config.max_attempts}, "
		f"timeout={config.delivery_timeout_seconds}s)"
	)

	async with httpx.AsyncClient() as http_client:
		worker = build_worker(AsyncSessionLocal, http_client, config)

		loop = asyncio.get_running_loop()
		for sig in (signal.SIGINT, signal.SIGTERM):
			try:
				loop.add_signal_handler(sig, lambda: asyncio.ensure_future(worker.stop()))
			except NotImplementedError:
				# Windows event loops do not support signal handlers
				pass

		try:
			await worker.start()
		finally:
			await close_db()


def main():
	asyncio.run(run_outbox_worker())


if __name__ == "__main__":
	main()
