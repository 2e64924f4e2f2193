"""Shared utilities for the budget control tools."""

# Pattern definitions
from utils.patterns import CURRENCY_CODE, WHITESPACE

# String utilities
from utils.strings import (
    safe_float,
    normalize_whitespace,
    normalize_for_comparison,
    normalize_code,
    natural_code_key,
)

# Database utilities
from utils.database import (
    init_pragmas,
    get_connection,
    batch_insert,
    get_table_count,
    table_exists,
    query_to_dicts,
    next_order_index,
    QueryBuilder,
)

# Caching
from utils.cache import TTLCache

# Output formatting
from utils.formatting import (
    format_amount,
    format_percent,
    format_quantity,
    TableFormatter,
    ReportFormatter,
)

# Configuration
from utils.config import Config, AppConfig

__all__ = [
    # Patterns
    "CURRENCY_CODE",
    "WHITESPACE",
    # Strings
    "safe_float",
    "normalize_whitespace",
    "normalize_for_comparison",
    "normalize_code",
    "natural_code_key",
    # Database
    "init_pragmas",
    "get_connection",
    "batch_insert",
    "get_table_count",
    "table_exists",
    "query_to_dicts",
    "next_order_index",
    "QueryBuilder",
    # Cache
    "TTLCache",
    # Formatting
    "format_amount",
    "format_percent",
    "format_quantity",
    "TableFormatter",
    "ReportFormatter",
    # Config
    "Config",
    "AppConfig",
]
