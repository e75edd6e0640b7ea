"""Pytest configuration. Ensures backend root is on sys.path for imports like services.*, workers.*, etc."""
import os
import sys
from pathlib import Path

_backend: Path = Path(__file__).resolve().parent
if str(_backend) not in sys.path:
    sys.path.insert(0, str(_backend))

# Settings are read at import time: point them at an in-memory database and
# drop the fixed Slack delays before anything imports config.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SYNC_PAGE_DELAY_SECONDS"] = "0"
os.environ["SYNC_CHANNEL_DELAY_SECONDS"] = "0"
os.environ["RESEND_API_KEY"] = ""
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
