"""Data-driven configuration for Productboard resources.

All resource definitions and tunables are centralized here - callers may
override any of the defaults through keyword arguments.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ResourceConfig:
    """Configuration for a Productboard resource type."""

    name: str
    endpoint: str
    v2_endpoint: str | None = None
    pagination: str = "offset"  # "offset" or "cursor"
    primary_key_field: str = "pb_id"
    secondary_key_field: str | None = None
    chunk_threshold: int = 100
    importable: bool = True
    deletable: bool = True


# Central configuration for all supported resources
RESOURCES: dict[str, ResourceConfig] = {
    "companies": ResourceConfig(
        name="companies",
        endpoint="/companies",
        pagination="offset",
        secondary_key_field="domain",
    ),
    "notes": ResourceConfig(
        name="notes",
        endpoint="/notes",
        v2_endpoint="/v2/notes",
        pagination="cursor",
        secondary_key_field="source_record_id",
    ),
    "entities": ResourceConfig(
        name="entities",
        endpoint="/v2/entities",
        v2_endpoint="/v2/entities",
        pagination="cursor",
        secondary_key_field="original_uuid",
        deletable=False,
    ),
    "users": ResourceConfig(
        name="users",
        endpoint="/users",
        pagination="offset",
        importable=False,
        deletable=False,
    ),
}

# API configuration
API_BASE_URL = "https://api.productboard.com"
API_BASE_URL_EU = "https://api.eu.productboard.com"
API_VERSION_HEADER = "1"
REQUEST_TIMEOUT = 30.0  # seconds

# Rate limiting: ~50 requests/second at full speed
BASE_DELAY = 0.02  # seconds
SLOW_REMAINING = 20
CRITICAL_REMAINING = 10
CRITICAL_FLOOR = 0.1  # seconds
DEFAULT_RATE_LIMIT = 50

# Retry configuration for 429 and 5xx
MAX_ATTEMPTS = 6
BACKOFF_BASE = 0.25  # seconds
BACKOFF_JITTER = 0.2  # seconds

# Delays before re-trying a backfill that hit 404 (write -> read propagation lag)
BACKFILL_DELAYS: tuple[float, ...] = (1.0, 2.0, 3.0)

# Pagination
DEFAULT_LIMIT = 100
MAX_PAGES = 1000

# Batch jobs
CHUNK_SIZE = 50
MAX_CHUNKS = 500
EXPORT_PAGES_PER_CHUNK = 10

# Read-only enrichment fan-out (custom field values on export)
ENRICHMENT_BATCH = 5
ENRICHMENT_PAUSE = 0.1  # seconds

# Hierarchy entity types searched when building the migration cache
ENTITY_TYPES = ["feature", "component", "product", "subfeature"]
DEFAULT_MIGRATION_FIELD = "original_uuid"

NOTE_TYPES = {"simple", "conversation", "opportunity"}

# Productboard rich text accepts only these tags in descriptions
SUPPORTED_HTML_TAGS = {
    "h1", "h2", "p", "b", "i", "u", "code", "ul", "ol", "li",
    "a", "hr", "pre", "blockquote", "s", "span",
}

MAX_TEXT_FIELD_LENGTH = 1024

# Job state keys in the key/value store (one active job per deployment)
JOB_SLOT = "active-job"
JOB_CACHE_SLOT = "active-job-cache"
JOB_INPUT_SLOT = "active-job-input"
DEFAULT_STATE_DIR = ".productboard-cli"
