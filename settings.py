"""
Settings — hub tunables read from the environment.

main.py calls load_dotenv() before importing this module, so values in .env
take effect. Durations are in seconds.
"""

import os

KEEPALIVE_INTERVAL = float(os.getenv("PROGRESS_KEEPALIVE_SECONDS", "30"))
SWEEP_INTERVAL = float(os.getenv("PROGRESS_SWEEP_SECONDS", "120"))
ORPHAN_TIMEOUT = float(os.getenv("PROGRESS_ORPHAN_TIMEOUT_SECONDS", "600"))
GRACE_PERIOD = float(os.getenv("PROGRESS_GRACE_SECONDS", "10"))

# Completed processes older than this are pruned before a panel snapshot
STALE_COMPLETED_AFTER = float(os.getenv("PROGRESS_STALE_COMPLETED_SECONDS", "60"))

STREAM_QUEUE_SIZE = int(os.getenv("PROGRESS_STREAM_QUEUE_SIZE", "256"))

UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.path.dirname(__file__), "uploads"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
