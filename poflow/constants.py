"""Shared constants for poflow."""

from __future__ import annotations

# Stage names, in pipeline order
EXTRACTION = "extraction"
NORMALIZATION = "normalization"
PERSISTENCE = "persistence"
ENRICHMENT = "enrichment"
SYNC = "sync"
STATUS_UPDATE = "status_update"

# Metadata slot holding the uploaded document
UPLOAD_SLOT = "upload"

DEFAULT_METADATA_TTL_SECONDS = 7200

DEFAULT_STAGE_CONCURRENCY = {
    EXTRACTION: 2,
    NORMALIZATION: 5,
    PERSISTENCE: 5,
    ENRICHMENT: 3,
    SYNC: 3,
    STATUS_UPDATE: 10,
}

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_ACCEPTANCE_THRESHOLD = 0.8
DEFAULT_STALENESS_THRESHOLD_SECONDS = 300
DEFAULT_SWEEP_INTERVAL_SECONDS = 300
DEFAULT_MAX_REATTEMPTS = 3

ABANDONED_REASON = "abandoned, no data extracted"
