"""Structured logging configuration with correlation IDs for request tracing.

This module provides structured JSON logging with:
- Correlation IDs for tracing requests and webhook deliveries
- Contextual fields (order, subscription)
- Masking of secrets, card numbers and emails in logged payloads
"""
from __future__ import annotations

import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
order_id_var: ContextVar[Optional[str]] = ContextVar("order_id", default=None)
subscription_id_var: ContextVar[Optional[str]] = ContextVar("subscription_id", default=None)

MASK_PATTERN = "***"
MAX_LOG_MESSAGE_LENGTH = 4000

SENSITIVE_FIELDS = frozenset({
    "password",
    "client_secret",
    "api_key",
    "webhook_secret",
    "authorization",
    "card_number",
    "cvc",
    "iban",
})

_CONTEXT_ATTRS = ("correlation_id", "order_id", "subscription_id")

_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "taskName", *_CONTEXT_ATTRS,
})


class CorrelationIDFilter(logging.Filter):
    """Logging filter that adds correlation ID and context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        record.order_id = order_id_var.get()
        record.subscription_id = subscription_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for attr in _CONTEXT_ATTRS:
            value = getattr(record, attr, None)
            if value:
                log_data[attr] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = mask_sensitive_data(value)

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(correlation_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(CorrelationIDFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(CorrelationIDFilter())
        root_logger.addHandler(file_handler)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str]) -> None:
    correlation_id_var.set(correlation_id)


def generate_correlation_id() -> str:
    return f"cor_{uuid.uuid4().hex[:16]}"


class LogContext:
    """Context manager for temporary order/subscription logging context."""

    def __init__(
        self,
        order_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ):
        self.order_id = order_id
        self.subscription_id = subscription_id
        self._tokens = []

    def __enter__(self) -> "LogContext":
        if self.order_id:
            self._tokens.append((order_id_var, order_id_var.set(self.order_id)))
        if self.subscription_id:
            self._tokens.append((subscription_id_var, subscription_id_var.set(self.subscription_id)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


# =============================================================================
# Sensitive Data Masking
# =============================================================================

def is_sensitive_key(key: Any) -> bool:
    key_lower = str(key).lower().replace("-", "_")
    return key_lower in SENSITIVE_FIELDS or any(
        sensitive in key_lower
        for sensitive in ("secret", "password", "token", "credential", "signature")
    )


_INLINE_PATTERNS = [
    (re.compile(r"\b(sk_live_|sk_test_|whsec_|rk_live_|rk_test_)[a-zA-Z0-9]+\b"), r"\1***"),
    (re.compile(r"(Bearer\s+)[a-zA-Z0-9._-]+", re.IGNORECASE), r"\1***"),
    (re.compile(r"(Basic\s+)[a-zA-Z0-9+/=]+", re.IGNORECASE), r"\1***"),
    (re.compile(r"(https?://)[^:/\s]+:[^@/\s]+@"), r"\1***:***@"),
    (re.compile(r"\beyJ[a-zA-Z0-9_-]+\.eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+\b"), "***JWT***"),
    # card-like digit runs
    (re.compile(r"\b(?:\d[ -]?){12,15}(\d{4})\b"), r"************\1"),
    (re.compile(r"\b([a-zA-Z0-9])[a-zA-Z0-9._%+-]*(@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})\b"), r"\1***\2"),
]


def _mask_inline_patterns(text: str) -> str:
    if len(text) > MAX_LOG_MESSAGE_LENGTH:
        text = text[:MAX_LOG_MESSAGE_LENGTH] + "...[truncated]"
    for pattern, replacement in _INLINE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def mask_sensitive_data(
    data: Any,
    additional_fields: Optional[Sequence[str]] = None,
    mask_pattern: str = MASK_PATTERN,
    _depth: int = 0,
    _max_depth: int = 10,
) -> Any:
    """Recursively mask sensitive data in a data structure.

    Args:
        data: The data structure to mask (dict, list, or scalar)
        additional_fields: Additional field names to mask
        mask_pattern: Pattern to replace sensitive values with

    Returns:
        Copy of data with sensitive values masked
    """
    if _depth > _max_depth:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if is_sensitive_key(key) or (additional_fields and key in additional_fields):
                result[key] = mask_pattern
            else:
                result[key] = mask_sensitive_data(value, additional_fields, mask_pattern, _depth + 1, _max_depth)
        return result

    if isinstance(data, (list, tuple)):
        return type(data)(
            mask_sensitive_data(item, additional_fields, mask_pattern, _depth + 1, _max_depth)
            for item in data
        )

    if isinstance(data, str):
        return _mask_inline_patterns(data)

    return data
