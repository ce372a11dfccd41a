#!/usr/bin/env python3
"""
Walks one job through the whole lifecycle against a running API
(PAYMENT_GATEWAY=fake): post, apply, accept, start on site, complete,
connect payouts, release funds, then checks both inboxes.
"""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import httpx

API_URL = "http://localhost:8000"

JOB_LAT, JOB_LNG = 37.7749, -122.4194


async def register(client: httpx.AsyncClient, prefix: str, account_type: str) -> dict:
    suffix = uuid.uuid4().hex[:6]
    resp = await client.post("/api/v1/users", json={
        "username": f"{prefix}-{suffix}",
        "full_name": f"{prefix.title()} {suffix}",
        "email": f"{prefix}-{suffix}@example.com",
        "account_type": account_type,
    })
    resp.raise_for_status()
    return resp.json()


def check(resp: httpx.Response, step: str) -> dict:
    if resp.status_code >= 400:
        print(f"FAILURE at {step}: {resp.status_code} {resp.text}")
        raise SystemExit(1)
    print(f"{step}: OK")
    return resp.json() if resp.content else {}


async def verify():
    # 0. Wait for API Readiness
    print("Waiting for API to be ready...")
    async with httpx.AsyncClient(base_url=API_URL, timeout=5.0) as check_client:
        for i in range(30):
            try:
                resp = await check_client.get("/health")
                if resp.status_code == 200:
                    print("API is ready!")
                    break
            except httpx.HTTPError:
                pass
            await asyncio.sleep(1)
        else:
            print("API failed to become ready.")
            return

    async with httpx.AsyncClient(base_url=API_URL, timeout=30.0) as client:
        poster = await register(client, "poster", "poster")
        worker = await register(client, "worker", "worker")
        as_poster = {"X-API-Key": poster["api_key"]}
        as_worker = {"X-API-Key": worker["api_key"]}

        job = check(await client.post("/api/v1/jobs", headers=as_poster, json={
            "title": "Assemble a bookshelf",
            "description": "Flat-pack, two shelves",
            "category": "Handyman",
            "payment_type": "fixed",
            "payment_amount": "80.00",
            "location": "Market St, San Francisco",
            "latitude": JOB_LAT,
            "longitude": JOB_LNG,
            "date_needed": (datetime.now(timezone.utc) + timedelta(days=1)).isoformat(),
        }), "post job")
        job_id = job["id"]

        application = check(await client.post("/api/v1/applications", headers=as_worker, json={
            "job_id": job_id,
            "message": "I can do it today",
        }), "apply")

        check(await client.patch(
            f"/api/v1/applications/{application['id']}/status",
            headers=as_poster,
            json={"status": "accepted"},
        ), "accept")

        check(await client.patch(f"/api/v1/jobs/{job_id}/start", headers=as_worker, json={
            "location": {"latitude": JOB_LAT + 0.001, "longitude": JOB_LNG, "accuracy": 12.0},
        }), "start on site")

        completed = check(await client.patch(f"/api/v1/jobs/{job_id}/complete", headers=as_worker), "complete")
        print(f"Earning: {completed['earning']['amount']} (net {completed['earning']['net_amount']})")

        check(await client.post("/api/v1/payments/connect/account", headers=as_worker), "connect payouts")

        released = check(await client.post("/api/v1/payments/transfer", headers=as_poster, json={"job_id": job_id}), "release funds")
        print(f"Transfer: {released['payment']['transaction_id']} -> earning {released['earning']['status']}")

        for name, headers in (("poster", as_poster), ("worker", as_worker)):
            inbox = check(await client.get("/api/v1/notifications", headers=headers), f"{name} inbox")
            print(f"  {name}: {[n['type'] for n in inbox]}")

        if released["job"]["status"] == "completed" and released["earning"]["status"] == "paid":
            print("SUCCESS: Job paid out.")
        else:
            print("FAILURE: Unexpected final state.")


if __name__ == "__main__":
    asyncio.run(verify())
