"""Asynchronous work-dispatch and notification core: job queue, outbox, realtime stream, webhook ingestion."""

__version__ = "0.1.0"
