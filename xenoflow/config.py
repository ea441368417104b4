import os

API_KEY = os.getenv("XENOFLOW_API_KEY", "xenoflow-secret-key")

DATABASE_PATH = os.getenv("XENOFLOW_DB_PATH", "xenoflow.db")
DATABASE_URL = f"sqlite:///{DATABASE_PATH}"

MASTER_HOST = os.getenv("XENOFLOW_HOST", "127.0.0.1")
MASTER_PORT = int(os.getenv("XENOFLOW_PORT", "8000"))

# Empty means tasks run in-process through the local backend.
WORKER_PORTS = [
    int(p) for p in os.getenv("XENOFLOW_WORKERS", "").split(",") if p.strip()
]
WORKER_HOST = os.getenv("XENOFLOW_WORKER_HOST", "127.0.0.1")

WORK_DIR = os.getenv("XENOFLOW_WORK_DIR", "xenoflow-work")

MAX_CONCURRENCY = int(os.getenv("XENOFLOW_MAX_CONCURRENCY", "4"))

_timeout = os.getenv("XENOFLOW_TASK_TIMEOUT", "")
TASK_TIMEOUT = float(_timeout) if _timeout else None

PREEMPTED_EXIT_CODES = tuple(
    int(c) for c in os.getenv("XENOFLOW_PREEMPTED_EXIT_CODES", "143").split(",") if c.strip()
)

RESOURCE_RETRY_MULTIPLIER = float(
    os.getenv("XENOFLOW_RESOURCE_RETRY_MULTIPLIER", "1.5")
)

USE_DOCKER = os.getenv("XENOFLOW_USE_DOCKER", "0") == "1"
CHECK_DISK = os.getenv("XENOFLOW_CHECK_DISK", "0") == "1"
COLLECT_INTERMEDIATES = os.getenv("XENOFLOW_COLLECT_INTERMEDIATES", "0") == "1"

SAMTOOLS_IMAGE = os.getenv("XENOFLOW_SAMTOOLS_IMAGE", "biocontainers/samtools:v1.9-4-deb_cv1")
BWA_IMAGE = os.getenv("XENOFLOW_BWA_IMAGE", "biocontainers/bwa:v0.7.17_cv1")
