#!/usr/bin/env python3
"""
Runtime configuration for the 360 Development Catalyst scoring engine.

Values are read from Streamlit secrets (section ``[catalyst]``) first, then
from ``CATALYST_*`` environment variables, then fall back to defaults.
"""

import os

from framework import ANONYMITY_THRESHOLD, MAX_LINEAGE_HOPS, SIGNIFICANT_GAP, TOP_N_ITEMS


def _load_secrets():
    """Return the [catalyst] secrets section, or an empty dict outside Streamlit."""
    try:
        import streamlit as st
        return dict(st.secrets.get("catalyst", {}))
    except Exception:
        # No secrets.toml, or not running under Streamlit
        return {}


def _raw(secrets, key):
    value = secrets.get(key)
    if value is None:
        value = os.environ.get(f"CATALYST_{key.upper()}")
    if isinstance(value, str):
        value = value.strip() or None
    return value


def _get_str(secrets, key, default):
    value = _raw(secrets, key)
    return default if value is None else str(value)


def _get_int(secrets, key, default):
    value = _raw(secrets, key)
    try:
        return default if value is None else int(value)
    except (TypeError, ValueError):
        return default


def _get_float(secrets, key, default):
    value = _raw(secrets, key)
    if isinstance(value, str):
        value = value.replace(",", ".")
    try:
        return default if value is None else float(value)
    except (TypeError, ValueError):
        return default


def _get_bool(secrets, key, default):
    value = _raw(secrets, key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("1", "true", "yes", "on")


class Settings:
    def __init__(self, **overrides):
        secrets = _load_secrets()

        self.db_path = _get_str(secrets, "db_path", "catalyst_360.db")
        self.log_level = _get_str(secrets, "log_level", "INFO")
        self.log_json = _get_bool(secrets, "log_json", False)
        self.gap_threshold = _get_float(secrets, "gap_threshold", SIGNIFICANT_GAP)
        self.top_n = _get_int(secrets, "top_n", TOP_N_ITEMS)
        self.anonymity_threshold = _get_int(secrets, "anonymity_threshold", ANONYMITY_THRESHOLD)
        self.lock_timeout = _get_float(secrets, "lock_timeout", 5.0)
        self.benchmark_retries = _get_int(secrets, "benchmark_retries", 3)
        self.benchmark_retry_delay = _get_float(secrets, "benchmark_retry_delay", 0.2)
        self.max_lineage_hops = _get_int(secrets, "max_lineage_hops", MAX_LINEAGE_HOPS)

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    def as_dict(self):
        return dict(vars(self))


settings = Settings()
