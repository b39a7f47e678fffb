"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    ISOBUILD_TEMP_DIR                    — Shared directory for published result files
    ISOBUILD_FILE_PREFIX                 — Prefix of every result/output file (default: isobuild)
    ISOBUILD_ARTIFACT_ROOT               — Parent directory of per-container artifact dirs
    ISOBUILD_MAX_PARALLEL                — Requested pool capacity (0 = all CPU cores)
    ISOBUILD_MEMORY_HEADROOM             — Memory fraction withheld from containers (default: 0.2)
    ISOBUILD_MIN_CONTAINER_MEMORY_MB     — Floor for per-container memory (default: 100)
    ISOBUILD_MAX_MEMORY_PER_CONTAINER_MB — Explicit per-container memory (0 = auto)
    ISOBUILD_TOTAL_MEMORY_LIMIT_MB       — Memory budget for the whole run (0 = system total)
    ISOBUILD_MEMORY_WAIT_TIMEOUT         — Seconds a step waits for free memory (default: 60)
    ISOBUILD_POOL_POLL_INTERVAL          — Seconds between blocked acquire checks (default: 0.5)
    ISOBUILD_RESULT_POLL_INTERVAL        — Seconds between result directory polls (default: 0.5)
    ISOBUILD_GRACEFUL_STOP_TIMEOUT       — Seconds docker stop waits on first interrupt (default: 10)
    ISOBUILD_CONTAINER_PREFIX            — Container name prefix (default: isobuild)
    ISOBUILD_KEEP_ARTIFACTS              — Keep artifact dirs after the run (default: false)
    ISOBUILD_REPORT_PATH                 — Where the JSON run report is written
    ISOBUILD_PLAN_PATH                   — Where the flat execution plan is written
    ISOBUILD_LOG_DIR                     — Directory for the daily log file (default: logs)
    ISOBUILD_LOG_LEVEL                   — Root log level name (default: INFO)
    ISOBUILD_API_HOST                    — Bind address of the HTTP API (default: 127.0.0.1)
    ISOBUILD_API_PORT                    — Port of the HTTP API (default: 8000)
    ISOBUILD_CORS_ORIGINS                — Comma-separated allowed origins

Memory Headroom:
    MEMORY_HEADROOM is the fraction of host memory never handed out to
    containers. It must lie in [0.0, 0.99]; the per-container allocation is
    total * (1 - headroom) / parallelism, floored to MIN_CONTAINER_MEMORY_MB.
"""
import os
import tempfile
from dotenv import load_dotenv

load_dotenv()

TEMP_DIR = os.getenv("ISOBUILD_TEMP_DIR", tempfile.gettempdir())
FILE_PREFIX = os.getenv("ISOBUILD_FILE_PREFIX", "isobuild")
ARTIFACT_ROOT = os.getenv("ISOBUILD_ARTIFACT_ROOT", TEMP_DIR)

# Resource pool
MAX_PARALLEL = int(os.getenv("ISOBUILD_MAX_PARALLEL", 0))
POOL_POLL_INTERVAL = float(os.getenv("ISOBUILD_POOL_POLL_INTERVAL", 0.5))

# Memory budget
MEMORY_HEADROOM = float(os.getenv("ISOBUILD_MEMORY_HEADROOM", 0.2))
MIN_CONTAINER_MEMORY_MB = int(os.getenv("ISOBUILD_MIN_CONTAINER_MEMORY_MB", 100))
MAX_MEMORY_PER_CONTAINER_MB = int(os.getenv("ISOBUILD_MAX_MEMORY_PER_CONTAINER_MB", 0))
TOTAL_MEMORY_LIMIT_MB = int(os.getenv("ISOBUILD_TOTAL_MEMORY_LIMIT_MB", 0))
MEMORY_WAIT_TIMEOUT = float(os.getenv("ISOBUILD_MEMORY_WAIT_TIMEOUT", 60))

# Result collection
RESULT_POLL_INTERVAL = float(os.getenv("ISOBUILD_RESULT_POLL_INTERVAL", 0.5))

# Containers
CONTAINER_PREFIX = os.getenv("ISOBUILD_CONTAINER_PREFIX", "isobuild")
GRACEFUL_STOP_TIMEOUT = int(os.getenv("ISOBUILD_GRACEFUL_STOP_TIMEOUT", 10))
KEEP_ARTIFACTS = os.getenv("ISOBUILD_KEEP_ARTIFACTS", "false").lower() == "true"

# Output
REPORT_PATH = os.getenv("ISOBUILD_REPORT_PATH", "isobuild-report.json")
PLAN_PATH = os.getenv("ISOBUILD_PLAN_PATH", "isobuild-plan.env")
LOG_DIR = os.getenv("ISOBUILD_LOG_DIR", "logs")
LOG_LEVEL = os.getenv("ISOBUILD_LOG_LEVEL", "INFO")

# HTTP API
API_HOST = os.getenv("ISOBUILD_API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("ISOBUILD_API_PORT", 8000))
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "ISOBUILD_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000,http://localhost:8000"
    ).split(",")
    if origin.strip()
]
