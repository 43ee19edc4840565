#!/usr/bin/env python3
"""
Example usage of the fixcast API.

Run the service first:
    uv run uvicorn fixcast.main:app --port 8080

Then run this script:
    uv run python examples/demo.py
    uv run python examples/demo.py --base-url http://192.168.2.100:8080  # from another machine
"""

import argparse
import sys
import time

import httpx

DEFAULT_BASE_URL = "http://localhost:8080"


def _print_fix(fix: dict | None) -> None:
    if fix is None:
        print("  (no fix)")
        return
    print(f"  Position:  {fix['latitude']:.6f}, {fix['longitude']:.6f}")
    print(f"  Accuracy:  {fix['accuracy']} m")
    print(f"  Timestamp: {fix['timestamp']}")


def main():
    parser = argparse.ArgumentParser(description="fixcast demo")
    parser.add_argument(
        "--base-url", default=DEFAULT_BASE_URL,
        help=f"Service URL (default: {DEFAULT_BASE_URL})",
    )
    args = parser.parse_args()
    base = args.base_url.rstrip("/")

    client = httpx.Client(base_url=base, timeout=5.0)

    # ── 1. Health check ────────────────────────────────────
    print("=== Health Check ===")
    health = client.get("/health").json()
    print(f"  Status:      {health['status']}")
    print(f"  Provider:    {'up' if health['provider_available'] else 'down'}")
    print(f"  Single-shot: {health['single_shot_supported']}")

    if health["status"] == "stopped":
        print("\n  Periodic tick is not installed. Check the service log.")
        sys.exit(1)

    # ── 2. Feed an accurate reading ────────────────────────
    now = int(time.time() * 1000)
    print("\n=== Accurate reading (10 m) ===")
    r = client.post("/fix/readings", json={
        "lat": 59.329323, "lon": 18.068581, "accuracy": 10, "timestamp": now,
    }).json()
    print(f"  Accepted: {r['position_accepted']}")
    _print_fix(r["fix"])

    # ── 3. A noisier reading nearby only refreshes the time ─
    print("\n=== Noisy reading (50 m, 20 m away) ===")
    r = client.post("/fix/readings", json={
        "lat": 59.329500, "lon": 18.068600, "accuracy": 50, "timestamp": now + 1000,
    }).json()
    print(f"  Accepted: {r['position_accepted']}  distance: {r['distance_m']} m")
    _print_fix(r["fix"])

    # ── 4. Current fix ─────────────────────────────────────
    print("\n=== Current Fix ===")
    resp = client.get("/fix")
    if resp.status_code == 404:
        print("  No location data received yet")
    else:
        info = resp.json()
        _print_fix(info["fix"])
        print(f"  Age:       {info['age_s']} s")
        print(f"  Broadcast: {info['latest_data_broadcast']}")

    # ── 5. Force update ────────────────────────────────────
    print("\n=== Force Update ===")
    r = client.post("/fix/force_update").json()
    print(f"  {r['message']}")

    # ── 6. Recent notifications ────────────────────────────
    print("\n=== Recent Notifications ===")
    for n in client.get("/notifications").json()[:5]:
        fix = n["fix"]
        print(f"  {n['topic']:<9} {fix['latitude']:.6f}, {fix['longitude']:.6f}  t={fix['timestamp']}")
    print()


if __name__ == "__main__":
    main()
