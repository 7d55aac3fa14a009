"""logbridge: per-session, redacted activity logs for wrapped processes and page connections.

Two producers write logs:
- a wrapped local process (stdout/stderr)
- a page connection delivering framed JSON records

Each producer lifetime gets its own session log. A registry shared across
processes tracks sessions, a sweeper reclaims the ones never closed, and an
aggregator serves the most recent lines to consumers.
"""

__version__ = "0.1.0"

# Storage & coordination
from .config import BridgeConfig, default_config, ensure_storage
from .errors import (
    LockTimeoutError,
    LogBridgeError,
    MalformedFrameError,
    SchemaViolationError,
    StorageUnavailableError,
)
from .mutex import FileMutex
from .session_registry import SessionRegistry, is_valid_session_id
from .session_schema import ActiveEntry, MasterIndexEntry, Session, SessionKind, SessionState

# Ingestion
from .decoder import LengthPrefixedDecoder, NewlineJSONDecoder, encode_frame, make_decoder
from .records import Record, parse_record, validate_record
from .redaction import RULES_VERSION, contains_secrets, find_secret_rules, redact
from .log_writer import SessionLogWriter, StreamLineBuffer
from .page_host import PageConnectionHost
from .wrapper import CommandWrapper

# Consumers & maintenance
from .reader import LogAggregator, detect_errors
from .sweeper import RetentionSweeper, SweepReport

__all__ = [
    # Storage & coordination
    "BridgeConfig",
    "default_config",
    "ensure_storage",
    "LogBridgeError",
    "LockTimeoutError",
    "MalformedFrameError",
    "SchemaViolationError",
    "StorageUnavailableError",
    "FileMutex",
    "SessionRegistry",
    "is_valid_session_id",
    "ActiveEntry",
    "MasterIndexEntry",
    "Session",
    "SessionKind",
    "SessionState",
    # Ingestion
    "LengthPrefixedDecoder",
    "NewlineJSONDecoder",
    "encode_frame",
    "make_decoder",
    "Record",
    "parse_record",
    "validate_record",
    "RULES_VERSION",
    "contains_secrets",
    "find_secret_rules",
    "redact",
    "SessionLogWriter",
    "StreamLineBuffer",
    "PageConnectionHost",
    "CommandWrapper",
    # Consumers & maintenance
    "LogAggregator",
    "detect_errors",
    "RetentionSweeper",
    "SweepReport",
]
