from __future__ import annotations
import os

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///.jobgraph/runs.db"

DATABASE_URL = os.environ.get("JOBGRAPH_DATABASE_URL", DEFAULT_DATABASE_URL)
HOST = os.environ.get("JOBGRAPH_HOST", "127.0.0.1")
PORT = int(os.environ.get("JOBGRAPH_PORT", "8000"))
RUNS_PAGE_SIZE = int(os.environ.get("JOBGRAPH_RUNS_PAGE_SIZE", "50"))
