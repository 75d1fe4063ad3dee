"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    COVPIPE_DEFINITION      — Path to the pipeline definition YAML
                              (default: workflows/coverage.yml)
    WORKSPACE_ROOT          — Host directory for per-run checkouts
    ARTIFACT_ROOT           — Host directory backing the artifact store
    CACHE_ROOT              — Host directory backing the build/dependency cache
    PRIMARY_BRANCH          — Trusted branch name (default: main)
    JOB_IMAGE               — Image the job steps execute in
    ARTIFACT_RETENTION_DAYS — Default artifact lifetime (default: 90)
    PUBLICATION_CREDENTIALS — Comma-separated env var names that hold
                              publication secrets (e.g. CODECOV_TOKEN)
    LOG_LEVEL               — Root log level for the service (default: INFO)

Trust Boundary:
    PUBLICATION_CREDENTIALS are never forwarded into any step environment.
    The names are only used to scrub and audit step environments; the
    values are read by the privileged publisher, which is not part of
    this service.
"""
import os
from dotenv import load_dotenv

load_dotenv()

_BASE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

DEFINITION_PATH = os.getenv(
    "COVPIPE_DEFINITION", os.path.join(_BASE_DIR, "workflows", "coverage.yml")
)
WORKSPACE_ROOT = os.getenv("WORKSPACE_ROOT", os.path.join(_BASE_DIR, "workspace"))
ARTIFACT_ROOT = os.getenv("ARTIFACT_ROOT", os.path.join(_BASE_DIR, "artifacts"))
CACHE_ROOT = os.getenv("CACHE_ROOT", os.path.join(_BASE_DIR, "cache"))
RUNS_ROOT = os.getenv("RUNS_ROOT", os.path.join(_BASE_DIR, "runs"))

PRIMARY_BRANCH = os.getenv("PRIMARY_BRANCH", "main")

# Job sandbox image: every environment/test step runs inside it
JOB_IMAGE = os.getenv("JOB_IMAGE", "ubuntu:24.04")
JOB_MEMORY_LIMIT = os.getenv("JOB_MEMORY_LIMIT", "4g")
JOB_CPU_COUNT = int(os.getenv("JOB_CPU_COUNT", 2))

# Service readiness probe budget (seconds)
SERVICE_READY_TIMEOUT = int(os.getenv("SERVICE_READY_TIMEOUT", 120))

ARTIFACT_RETENTION_DAYS = int(os.getenv("ARTIFACT_RETENTION_DAYS", 90))

PUBLICATION_CREDENTIALS = [
    name.strip()
    for name in os.getenv("PUBLICATION_CREDENTIALS", "CODECOV_TOKEN").split(",")
    if name.strip()
]

# Repository clone token (read-only); only used on the host, never in steps
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
