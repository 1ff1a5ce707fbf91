"""Trigger an assessment run on a local service and poll until it finishes."""

import json
import sys
import time
import urllib.error
import urllib.request


BASE_URL = "http://127.0.0.1:8000"
TIMEOUT_SECONDS = 900
POLL_INTERVAL_SECONDS = 2.0


def _request(method: str, path: str) -> dict:
    req = urllib.request.Request(url=f"{BASE_URL}{path}", method=method)
    with urllib.request.urlopen(req, timeout=10) as resp:
        body = resp.read().decode("utf-8")
        return json.loads(body) if body else {}


def main() -> int:
    try:
        print("Posting to /runs ...")
        created = _request("POST", "/runs")
    except urllib.error.HTTPError as exc:
        if exc.code == 409:
            print("A run is already in progress; try again later.", file=sys.stderr)
            return 4
        raise
    except urllib.error.URLError as exc:
        print(f"Failed to reach API at {BASE_URL}: {exc}", file=sys.stderr)
        print("Start it first with: uvicorn main:app", file=sys.stderr)
        return 1

    run_id = created.get("run_id")
    if not run_id:
        print(f"Unexpected response: {created}", file=sys.stderr)
        return 1

    print(f"Run accepted: {run_id}")
    deadline = time.time() + TIMEOUT_SECONDS
    while time.time() < deadline:
        record = _request("GET", f"/runs/{run_id}")
        status = record.get("status")
        print(f"  status={status}")

        if status != "pending":
            print("\nFinal run record:")
            print(json.dumps(record, indent=2))
            return 0 if status == "complete" else 2

        time.sleep(POLL_INTERVAL_SECONDS)

    print(f"Timed out after {TIMEOUT_SECONDS}s waiting for the run.", file=sys.stderr)
    return 3


if __name__ == "__main__":
    raise SystemExit(main())
