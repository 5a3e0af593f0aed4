#!/usr/bin/env python3
"""Manual smoke test: stream one reply from a running server and rate a suggestion."""
import json
import sys
import uuid

import requests

BASE_URL = sys.argv[1] if len(sys.argv) > 1 else "http://127.0.0.1:8000/api"

session_id = uuid.uuid4().hex
payload = {"sessionId": session_id, "userId": "user_1", "prompt": "Hello! How are you today?"}

print("Streaming reply...")
done = None
with requests.post(f"{BASE_URL}/chat/stream", json=payload, stream=True, timeout=60) as response:
    print(f"Stream response: {response.status_code}")
    response.raise_for_status()
    for line in response.iter_lines(decode_unicode=True):
        if not line or not line.startswith("data: "):
            continue
        event = json.loads(line[len("data: "):])
        if event["type"] == "token":
            print(event["content"], end="", flush=True)
        elif event["type"] == "done":
            done = event
        else:
            print(f"\nError event: {json.dumps(event, indent=2)}")

print()
if done:
    print(f"Metrics: {json.dumps(done['metrics'], indent=2)}")
    if done["suggestions"]:
        suggestion = done["suggestions"][0]
        print(f"\nRating suggestion {suggestion['text']!r}...")
        rank = requests.post(f"{BASE_URL}/suggestions/{suggestion['id']}/rank", json={"rank": 5}, timeout=10)
        print(f"Rank response: {rank.status_code} {rank.json()}")

detail = requests.get(f"{BASE_URL}/sessions/{session_id}", timeout=10)
print(f"\nSession detail: {detail.status_code}")
print(json.dumps(detail.json(), indent=2)[:1500])
