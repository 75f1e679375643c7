from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Job queue
QUEUE_DEPTH = Gauge('job_queue_depth', 'Number of jobs per status', ['status'])
JOBS_ENQUEUED_TOTAL = Counter('jobs_enqueued_total', 'Total jobs enqueued', ['type'])
JOBS_CLAIMED_TOTAL = Counter('jobs_claimed_total', 'Total jobs claimed by workers', ['type'])
JOBS_RECLAIMED_TOTAL = Counter(
    'jobs_reclaimed_total',
    'Total running jobs reclaimed after their lock went stale',
    ['type']
)
JOB_OUTCOME_TOTAL = Counter(
    'job_outcome_total',
    'Job handler outcomes',
    ['type', 'outcome']  # succeeded|retrying|failed|lost_lock
)
JOB_DURATION = Histogram(
    'job_duration_seconds',
    'Handler execution time',
    ['type'],
    buckets=[0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 60.0, 120.0]
)
JOB_STORE_ERRORS_TOTAL = Counter('job_store_errors_total', 'Job store failures seen by the worker loop')

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the maintenance leader (1 for leader, 0 for follower)"
)

# Outbox
DOMAIN_EVENTS_PUBLISHED_TOTAL = Counter('domain_events_published_total', 'Domain events written', ['type'])
DOMAIN_EVENT_PUBLISH_FAILURES_TOTAL = Counter(
    'domain_event_publish_failures_total',
    'Domain events that could not be written',
    ['type']
)
DOMAIN_EVENTS_PURGED_TOTAL = Counter('domain_events_purged_total', 'Expired domain events deleted')

# Realtime gateway
REALTIME_CONNECTIONS = Gauge('realtime_connections', 'Open realtime stream connections')
REALTIME_UPDATES_DELIVERED_TOTAL = Counter('realtime_updates_delivered_total', 'Updates written to realtime streams')
REALTIME_POLL_FAILURES_TOTAL = Counter('realtime_poll_failures_total', 'Realtime outbox polls that raised')

# Webhooks
WEBHOOK_REQUESTS_TOTAL = Counter(
    'webhook_requests_total',
    'Webhook deliveries by outcome',
    ['provider', 'outcome']  # accepted|ingested|duplicate|ignored|rejected
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
