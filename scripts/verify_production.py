import json
import os
import sys

import requests

BASE_URL = os.environ.get("RELAY_URL", "http://localhost:3000")


def final_verification(destroy_session=None):
    print("--- Starting Production Verification ---")
    print(f"Relay: {BASE_URL}")
    try:
        health = requests.get(f"{BASE_URL}/health", timeout=10)
        if health.status_code != 200:
            print(f"❌ Health check failed {health.status_code}: {health.text}")
            return False
        data = health.json()
        print(f"✅ Health: {data['status']} ({data['sessions']} sessions, {data['active_processing']} processing)")

        sessions = requests.get(f"{BASE_URL}/sessions", timeout=10).json()
        for s in sessions[:10]:
            print(f"  {s['id']}  messages={s['message_count']}  last_activity={s['last_activity']}")

        metrics = requests.get(f"{BASE_URL}/metrics/relay", timeout=10)
        if metrics.status_code == 200:
            print("\n📈 Metrics:")
            print(json.dumps(metrics.json(), indent=2))

        if destroy_session:
            r = requests.delete(f"{BASE_URL}/sessions/{destroy_session}", timeout=10)
            print(f"\nDestroy {destroy_session}: {r.json()}")
        return True
    except requests.RequestException as e:
        print(f"❌ Verification failed: {e}")
        return False


if __name__ == "__main__":
    ok = final_verification(sys.argv[1] if len(sys.argv) > 1 else None)
    sys.exit(0 if ok else 1)
