"""
Cron trigger for the delivery workers.

Calls POST /api/workers/{channel}/run for every channel against a running
instance and prints one JSON summary. Intended for schedulers that cannot
run Celery beat (platform cron jobs, CI schedules).

Environment:
    BASE_URL                  instance URL (default http://127.0.0.1:$PORT)
    WORKER_TOKEN              shared worker token (required)
    TRIGGER_TIMEOUT_SECONDS   per-request timeout (default 30)
"""

from __future__ import annotations

import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import httpx

# Allow running from any directory (`python scripts/trigger_workers.py`)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from relay.core.logging import get_logger, setup_logging  # noqa: E402

logger = get_logger(__name__)

CHANNELS = ("webhooks", "communications", "calendar", "push")
BODY_MAX_CHARS = 1000


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("TRIGGER_TIMEOUT_SECONDS", "30"))


def trigger_all(client: httpx.Client, base_url: str, token: str) -> dict:
    """One POST per channel; a failing channel does not stop the others"""
    results = {}
    for channel in CHANNELS:
        url = f"{base_url}/api/workers/{channel}/run"
        try:
            resp = client.post(url, headers={"X-Worker-Token": token})
        except httpx.HTTPError as e:
            logger.warning("Worker trigger failed", extra_data={"channel": channel, "error": str(e)})
            results[channel] = {"ok": False, "status": 0, "body": str(e)[:BODY_MAX_CHARS]}
            continue
        results[channel] = {
            "ok": resp.is_success,
            "status": resp.status_code,
            "body": (resp.text or "")[:BODY_MAX_CHARS],
        }
    return {
        "ok": all(r["ok"] for r in results.values()),
        "ran_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "results": results,
    }


def main() -> int:
    setup_logging(level="INFO", json_format=False, app_name="soundpath-relay-cron")

    token = os.environ.get("WORKER_TOKEN", "")
    if not token:
        logger.error("WORKER_TOKEN is not set")
        return 1

    base_url = _base_url()
    with httpx.Client(timeout=_timeout_seconds()) as client:
        summary = trigger_all(client, base_url, token)

    print(json.dumps(summary, indent=2))
    return 0 if summary["ok"] else 2


if __name__ == "__main__":
    sys.exit(main())
