#!/usr/bin/env python3
import asyncio
import re
import sys

import httpx

API_URL = "http://localhost:8000"

def sum_metric(output: str, metric_name: str, labels: dict = None) -> float:
    """
    Sums a Prometheus metric across the series in the text output.
    Supports basic label matching.
    """
    total = 0.0
    for line in output.split('\n'):
        if line.startswith('#') or not line.strip():
            continue
        match = re.match(r'^([a-zA-Z_0-9]+)(\{.*\})?\s+(.+)$', line)
        if not match or match.group(1) != metric_name:
            continue
        found_labels = match.group(2) or ""
        if labels is None or all(f'{k}="{v}"' in found_labels for k, v in labels.items()):
            total += float(match.group(3))
    return total

async def check_job_backlog(warn: int = 100, critical: int = 500) -> int:
    async with httpx.AsyncClient(base_url=API_URL, timeout=10.0) as client:
        print("1. Fetching queue snapshot...")
        resp = await client.get("/api/v1/admin/queue")
        resp.raise_for_status()
        snapshot = resp.json()
        for key in ("queued_ready", "queued_delayed", "running", "succeeded", "failed_last_24h"):
            print(f"   {key}: {snapshot[key]}")

        print("2. Fetching metrics...")
        metrics = (await client.get("/metrics")).text
        leader = sum_metric(metrics, "instance_leader_status")
        retrying = sum_metric(metrics, "job_outcome_total", {"outcome": "retrying"})
        reclaimed = sum_metric(metrics, "jobs_reclaimed_total")
        print(f"   leader on this instance: {bool(leader)}")
        print(f"   retrying outcomes: {retrying:.0f}, reclaimed jobs: {reclaimed:.0f}")

    backlog = snapshot["backlog"]
    if backlog >= critical:
        print(f"CRITICAL: backlog {backlog} >= {critical}")
        return 2
    if backlog >= warn:
        print(f"WARN: backlog {backlog} >= {warn}")
        return 1
    print(f"OK: backlog {backlog}")
    return 0

if __name__ == "__main__":
    sys.exit(asyncio.run(check_job_backlog(*map(int, sys.argv[1:3]))))
