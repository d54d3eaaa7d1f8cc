"""
System-wide constants for the operator console.

Centralizes fixed-point scales and default values used across modules.
"""

# Fixed-point scales (implied decimal places)
PRICE_DECIMALS = 6
SIZE_DECIMALS = 18
QUOTE_DECIMALS = 6
PNL_DECIMALS = 18

# Gateway defaults
DEFAULT_CONCURRENCY_LIMIT = 3
DEFAULT_RETRY_ATTEMPTS = 8
DEFAULT_RETRY_BASE_DELAY_MS = 250
DEFAULT_RETRY_MAX_DELAY_MS = 5000
DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0
DEFAULT_HEALTH_TIMEOUT_SECONDS = 30.0
DEFAULT_HEALTH_INTERVAL_SECONDS = 1.0

# Error messages matching any of these (lowercased) are treated as transient
TRANSIENT_ERROR_PATTERNS = (
    "econnreset",
    "connection reset",
    "etimedout",
    "timeout",
    "timed out",
    "econnrefused",
    "connection refused",
    "network error",
    "socket hang up",
)

# Post-trade display pauses
DEFAULT_SUCCESS_PAUSE_MS = 3000
DEFAULT_ERROR_PAUSE_MS = 5000

# Orders
DEFAULT_SLIPPAGE_BPS = 100
MAX_SLIPPAGE_BPS = 10_000
BPS_DENOMINATOR = 10_000

# History ledger
LEDGER_CAPACITY = 50
DEFAULT_HISTORY_VIEW = 10

# Batch runner
MAX_SCRIPT_DEPTH = 4

# Diagnostic event feed
DEFAULT_DIAGNOSTIC_EVENTS = (
    "OrderPlaced",
    "OrderCancelled",
    "TradeExecuted",
    "PositionUpdated",
    "MarginUpdated",
    "LiquidationCheckTriggered",
)
DEFAULT_DIAGNOSTIC_POLL_SECONDS = 1.0

# Reconciliation
DEFAULT_UNREALIZED_TOLERANCE_BPS = 50
