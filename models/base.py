from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class SourceType(str, enum.Enum):
    """Data source types"""
    JSON = "json"
    CSV = "csv"
    XML = "xml"
    DATABASE = "database"
    API = "api"
    FTP = "ftp"


class RunState(str, enum.Enum):
    """Ingestion run lifecycle states"""
    STARTED = "started"
    VALIDATING = "validating"
    TRANSFORMING = "transforming"
    ENRICHING = "enriching"
    DEDUPLICATING = "deduplicating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED})

# Pipeline order; each state may only advance to the next one
PIPELINE_ORDER = (
    RunState.STARTED,
    RunState.VALIDATING,
    RunState.TRANSFORMING,
    RunState.ENRICHING,
    RunState.DEDUPLICATING,
    RunState.COMPLETED,
)


class RunMode(str, enum.Enum):
    """How extraction selects records"""
    INCREMENTAL = "incremental"  # watermark-driven
    FULL = "full"                # ignore watermarks


class ProbeStatus(str, enum.Enum):
    """Connectivity probe outcome"""
    HEALTHY = "healthy"
    UNREACHABLE = "unreachable"
