#!/usr/bin/env python3
import asyncio
import json
import uuid

import httpx

API_URL = "http://localhost:8000"

async def read_frames(response, frames, stop_after):
    """Collects (event, data) pairs from an SSE response."""
    event, data = None, None
    async for line in response.aiter_lines():
        if line.startswith("event: "):
            event = line[len("event: "):]
        elif line.startswith("data: "):
            data = json.loads(line[len("data: "):])
        elif line == "" and event:
            frames.append((event, data))
            if event == stop_after:
                return
            event, data = None, None

async def verify_realtime_stream():
    owner_id = f"owner-stream-{uuid.uuid4()}"
    frames = []

    async with httpx.AsyncClient(base_url=API_URL, timeout=30.0) as client:
        print("1. Opening stream (topics=meetings)...")
        async with client.stream(
            "GET",
            "/api/v1/realtime/stream",
            params={"topics": "meetings"},
            headers={"X-Owner-ID": owner_id},
        ) as response:
            if response.status_code != 200:
                print(f"FAILURE: Stream rejected with {response.status_code}")
                return

            reader = asyncio.create_task(read_frames(response, frames, stop_after="update"))
            await asyncio.sleep(1)

            print("2. Enqueuing an ingest job...")
            resp = await client.post(
                "/api/v1/jobs",
                headers={"X-Owner-ID": owner_id},
                json={
                    "type": "fathom-webhook-ingest",
                    "payload": {"recordingId": f"rec-{uuid.uuid4().hex[:8]}", "data": {"title": "Stream test"}},
                },
            )
            resp.raise_for_status()
            print(f"   Job: {resp.json()['id']}")

            print("3. Waiting for the update frame...")
            try:
                await asyncio.wait_for(reader, timeout=20)
            except asyncio.TimeoutError:
                print(f"FAILURE: No update within 20s. Frames: {[f[0] for f in frames]}")
                return

    names = [name for name, _ in frames]
    print(f"   Frames: {names}")
    update = frames[-1][1]
    if names[0] == "ready" and update["type"] == "meeting.ingested" and "meetings" in update["topics"]:
        print(f"SUCCESS: Received {update['type']} for meeting {update['payload'].get('meetingId')}")
    else:
        print(f"FAILURE: Unexpected frames {frames}")

if __name__ == "__main__":
    asyncio.run(verify_realtime_stream())
