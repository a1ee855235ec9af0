"""
Shared utilities for the RewardGuard API.

This module contains common utilities, decorators, and helpers
used across all API blueprints.
"""

import ipaddress
import os
import secrets
from functools import wraps
from typing import Any

from flask import jsonify, request

from integrity_errors import ErrorKind
from rate_limiter import RateLimitResult, create_rate_limit_response

# ============================================================
# Security Configuration
# ============================================================

# API key shared with the calling backend
API_KEY = os.getenv("REWARDGUARD_API_KEY", None)
# SECURITY: Default to requiring authentication for production safety
API_KEY_REQUIRED = os.getenv("REWARDGUARD_REQUIRE_AUTH", "true").lower() == "true"

MAX_ID_LENGTH = 256
MAX_USER_AGENT_LENGTH = 512


# ============================================================
# Validation Utilities
# ============================================================

def validate_json_schema(
    data: dict[str, Any],
    required_fields: dict[str, type | tuple[type, ...]],
    optional_fields: dict[str, type | tuple[type, ...]] | None = None,
    max_lengths: dict[str, int] | None = None
) -> tuple:
    """
    Validate JSON payload against a simple schema.

    Args:
        data: The JSON data to validate
        required_fields: Dict mapping field names to expected types
        optional_fields: Dict mapping optional field names to expected types
        max_lengths: Dict mapping field names to maximum string lengths

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "Request body must be a JSON object"

    for field_name, expected_type in required_fields.items():
        if field_name not in data or data[field_name] is None:
            return False, f"Missing required field: {field_name}"
        if not _is_type(data[field_name], expected_type):
            return False, f"Field '{field_name}' must be of type {_type_name(expected_type)}"

    if optional_fields:
        for field_name, expected_type in optional_fields.items():
            if field_name in data and data[field_name] is not None:
                if not _is_type(data[field_name], expected_type):
                    return False, f"Field '{field_name}' must be of type {_type_name(expected_type)}"

    if max_lengths:
        for field_name, max_len in max_lengths.items():
            if field_name in data and isinstance(data[field_name], str):
                if len(data[field_name]) > max_len:
                    return False, f"Field '{field_name}' exceeds maximum length of {max_len}"

    return True, None


def _is_type(value: Any, expected: type | tuple[type, ...]) -> bool:
    # bool is an int subclass; never accept it where a number is expected
    if isinstance(value, bool):
        expected_types = expected if isinstance(expected, tuple) else (expected,)
        return bool in expected_types
    return isinstance(value, expected)


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def get_json_body() -> dict[str, Any]:
    return request.get_json(silent=True) or {}


def bad_request(message: str):
    return jsonify({"success": False, "error": "INVALID_REQUEST", "message": message}), 400


# ============================================================
# Result Rendering
# ============================================================

def status_for(kind: ErrorKind | None) -> int:
    """
    HTTP status for an integrity outcome.

    Next-step signals are 200 with success false so the client can act on
    them; throttles are 429; every other integrity error is 400.
    """
    if kind is None or kind.is_next_step:
        return 200
    if kind.is_throttle:
        return 429
    return 400


def render_result(body: dict[str, Any], kind: ErrorKind | None, rate_limit: RateLimitResult | None = None):
    """Turn a result dict into a Flask response with the mapped status."""
    if rate_limit is not None and not rate_limit.allowed:
        limited_body, status, headers = create_rate_limit_response(rate_limit)
        return jsonify(limited_body), status, headers
    return jsonify(body), status_for(kind)


# ============================================================
# IP Utilities
# ============================================================

def is_valid_ip(ip_str: str) -> bool:
    """
    Validate that a string is a valid IPv4 or IPv6 address.

    Args:
        ip_str: String to validate as IP address

    Returns:
        True if valid IP address, False otherwise
    """
    try:
        ipaddress.ip_address(ip_str.strip())
        return True
    except (ValueError, AttributeError):
        return False


# SECURITY: Trusted proxy configuration
# Only trust X-Forwarded-For headers from these IPs
# If not set, X-Forwarded-For is NOT trusted (secure default)
TRUSTED_PROXIES = set(
    ip.strip() for ip in os.getenv("REWARDGUARD_TRUSTED_PROXIES", "").split(",")
    if ip.strip()
)


def get_client_ip() -> str:
    """
    Get client IP address, considering proxies.

    Only trusts X-Forwarded-For when the request comes from a trusted
    proxy, and then uses the rightmost untrusted address.

    Configure trusted proxies via REWARDGUARD_TRUSTED_PROXIES env var.
    """
    remote_addr = request.remote_addr or 'unknown'

    if TRUSTED_PROXIES and remote_addr in TRUSTED_PROXIES:
        xff = request.headers.get('X-Forwarded-For')
        if xff:
            parts = [p.strip() for p in xff.split(',')]

            for ip in reversed(parts):
                if ip and is_valid_ip(ip) and ip not in TRUSTED_PROXIES:
                    return ip

            for ip in parts:
                if ip and is_valid_ip(ip):
                    return ip

    return remote_addr


# ============================================================
# Authentication Decorator
# ============================================================

def require_api_key(f):
    """Decorator to require API key authentication."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not API_KEY_REQUIRED:
            return f(*args, **kwargs)

        provided_key = request.headers.get('X-API-Key')

        if not provided_key:
            return jsonify({
                "error": "API key required",
                "hint": "Provide API key in X-API-Key header"
            }), 401

        if not API_KEY:
            return jsonify({
                "error": "Server API key not configured",
                "hint": "Set REWARDGUARD_API_KEY environment variable"
            }), 503

        if not secrets.compare_digest(provided_key, API_KEY):
            return jsonify({"error": "Invalid API key"}), 403

        return f(*args, **kwargs)
    return decorated_function
