"""External dispatcher: list eligible tasks and process them over HTTP.

Useful when the in-process dispatcher is disabled, or to drain one task type
by hand after an incident.
"""

import argparse
import asyncio
from collections import Counter

import httpx

TASK_TYPES = [
    "payment_customer_creating",
    "init_credit_granting",
    "payment",
    "payment_invoice_creating",
    "payment_invoice_paying",
    "payment_method_needs_update_notifying",
    "payment_profile_suspending",
    "payment_profile_suspension_notifying",
    "payment_profile_state_syncing",
    "connected_account_creating",
    "connected_account_needs_setup_notifying",
    "payout_transfer_creating",
    "payout_success_notifying",
    "payout_disabled_notifying",
]


async def drain(base_url: str, task_types: list[str], concurrency: int, limit: int) -> Counter:
    """Process every currently eligible task once; return outcome counts."""

    sem = asyncio.Semaphore(concurrency)
    outcomes: Counter = Counter()

    async with httpx.AsyncClient(base_url=base_url, timeout=60.0) as client:

        async def process(task_type: str, payload: dict) -> None:
            async with sem:
                resp = await client.post(f"/tasks/{task_type}/process", json=payload)
            if resp.status_code >= 400:
                print(f"{task_type} {payload} -> HTTP {resp.status_code} {resp.text}")
                outcomes[f"HTTP_{resp.status_code}"] += 1
                return
            outcomes[resp.json()["outcome"]] += 1

        jobs = []
        for task_type in task_types:
            resp = await client.get(f"/tasks/{task_type}/pending", params={"limit": limit})
            resp.raise_for_status()
            tasks = resp.json()["tasks"]
            print(f"{task_type}: {len(tasks)} eligible")
            jobs.extend(process(task_type, payload) for payload in tasks)
        await asyncio.gather(*jobs)
    return outcomes


def main() -> None:
    """Parse CLI args and drain eligible tasks."""

    parser = argparse.ArgumentParser(description="Process eligible billing tasks over HTTP.")
    parser.add_argument("--base-url", default="http://localhost:8020")
    parser.add_argument("--task-type", action="append", choices=TASK_TYPES, help="Repeatable; default all types")
    parser.add_argument("--concurrency", type=int, default=8)
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    outcomes = asyncio.run(drain(args.base_url, args.task_type or TASK_TYPES, args.concurrency, args.limit))
    print(f"Outcomes: {dict(outcomes)}")


if __name__ == "__main__":
    main()
