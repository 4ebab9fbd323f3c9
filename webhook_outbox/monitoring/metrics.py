from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import Counter, Histogram, Gauge, generate_latest

router = APIRouter()

# HTTP API
request_count = Counter(
	'http_requests_total',
	'Total HTTP requests',
	['method', 'endpoint', 'status']
)

request_duration = Histogram(
	'http_request_duration_seconds',
	'HTTP request duration',
	['method', 'endpoint'],
	buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

active_requests = Gauge(
	'http_requests_active',
	'Number of active HTTP requests'
)

# Webhook delivery
delivery_attempts = Counter(
	'webhook_delivery_attempts_total',
	'Webhook delivery attempts by outcome and resulting entry status',
	['outcome', 'status']
)

delivery_duration = Histogram(
	'webhook_delivery_duration_seconds',
	'Duration of a single webhook POST',
	buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

entries_dead = Counter(
	'webhook_entries_dead_total',
	'Entries moved to the dead-letter state'
)

leases_recovered = Counter(
	'webhook_leases_recovered_total',
	'Delivering entries returned to pending after their lease expired'
)

replays = Counter(
	'webhook_replays_total',
	'Dead entries replayed'
)

worker_ticks = Counter(
	'webhook_worker_ticks_total',
	'Worker ticks executed',
	['result']
)


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics():
	"""Prometheus metrics endpoint"""
	return generate_latest()
