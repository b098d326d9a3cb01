#!/usr/bin/env python3
import sys
import os

print("Running preflight import check...")
try:
    # Set dummy env vars so config load never depends on a real deployment
    os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
    os.environ.setdefault("POLL_MODE", "rq")

    import bioauth.main
    print("Import bioauth.main: OK")

    import bioauth.queue.jobs
    print("Import bioauth.queue.jobs: OK")

    from bioauth.settings import settings
    if not settings.PROVIDER_API_KEY_ID or not settings.PROVIDER_API_KEY_VALUE:
        print("[WARN] PROVIDER_API_KEY_ID / PROVIDER_API_KEY_VALUE are not set; operation creation will fail.")
    if settings.JWT_SECRET == "change-me":
        print("[WARN] JWT_SECRET is the development default.")

    print("Preflight check passed.")
    sys.exit(0)
except Exception as e:
    print(f"Preflight check FAILED: {e}")
    import traceback
    traceback.print_exc()
    sys.exit(1)
