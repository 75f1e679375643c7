#!/usr/bin/env python3
import asyncio
import base64
import json
import time
import uuid

import httpx

from taskrelay.auth.security import compute_webhook_signature

API_URL = "http://localhost:8000"

def signed_headers(secret, body):
    webhook_id = f"msg_{uuid.uuid4().hex}"
    timestamp = str(int(time.time()))
    signature = compute_webhook_signature(secret, webhook_id, timestamp, body)
    return {
        "webhook-id": webhook_id,
        "webhook-timestamp": timestamp,
        "webhook-signature": f"v1,{signature}",
        "Content-Type": "application/json",
    }

async def wait_for_job(client, owner_id, job_id, timeout=20.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        resp = await client.get(f"/api/v1/jobs/{job_id}", headers={"X-Owner-ID": owner_id})
        job = resp.json()
        if job["status"] in ("succeeded", "failed"):
            return job
        await asyncio.sleep(0.5)
    return None

async def verify_duplicate_webhook():
    owner_id = f"owner-duplicate-{uuid.uuid4()}"
    secret = "whsec_" + base64.b64encode(uuid.uuid4().bytes).decode()
    recording_id = f"rec-{uuid.uuid4().hex[:8]}"

    async with httpx.AsyncClient(base_url=API_URL, timeout=10.0) as client:
        # 1. Register a webhook endpoint for the owner
        print("1. Registering webhook endpoint...")
        resp = await client.post(
            "/api/v1/admin/webhook-endpoints",
            headers={"X-Owner-ID": owner_id},
            json={"provider": "fathom", "secret": secret},
        )
        resp.raise_for_status()
        token = resp.json()["token"]
        print(f"   Endpoint token: {token}")

        # 2. Deliver the same recording 5 times at once
        body = json.dumps({
            "type": "new-meeting-content-ready",
            "data": {"recording_id": recording_id, "title": "Duplicate delivery test"},
        }).encode("utf-8")
        print(f"2. Sending 5 concurrent deliveries for {recording_id}...")
        responses = await asyncio.gather(*[
            client.post(f"/api/v1/webhooks/fathom?token={token}", content=body, headers=signed_headers(secret, body))
            for _ in range(5)
        ])
        for r in responses:
            print(f"   {r.status_code} {r.json()}")
        if any(r.status_code not in (200, 202) for r in responses):
            print("FAILURE: A delivery was rejected.")
            return

        # 3. Sync mode answers with the meeting directly
        if all(r.status_code == 200 for r in responses):
            statuses = sorted(r.json()["status"] for r in responses)
            meeting_ids = {r.json()["meetingId"] for r in responses}
        else:
            # 3. Queued mode: wait for every ingest job
            print("3. Waiting for ingest jobs...")
            jobs = await asyncio.gather(*[
                wait_for_job(client, owner_id, r.json()["jobId"]) for r in responses
            ])
            if any(job is None or job["status"] != "succeeded" for job in jobs):
                print(f"FAILURE: Not every ingest job succeeded: {[j and j['status'] for j in jobs]}")
                return
            statuses = sorted(job["result"]["status"] for job in jobs)
            meeting_ids = {job["result"]["meetingId"] for job in jobs}

    print(f"   Statuses: {statuses}")
    if len(meeting_ids) == 1 and statuses.count("created") == 1:
        print(f"SUCCESS: One meeting created ({meeting_ids.pop()}), {statuses.count('duplicate')} duplicates.")
    else:
        print(f"FAILURE: Expected one meeting, got {meeting_ids}")

if __name__ == "__main__":
    asyncio.run(verify_duplicate_webhook())
