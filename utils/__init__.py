"""Utility modules for the telemetry monitor."""
from utils.logger import setup_logging
from utils.formatters import format_compact, format_duration_ms, format_severity, format_timestamp, time_ago
from utils.rate_limiter import RateLimiter, RateLimitResult, rate_limit_headers
from utils.http_client import HTTPClient, APIError
from utils.dispatch import InlineDispatcher, ThreadDispatcher
