"""
Runtime configuration for the time-block engine.

Every value can be overridden through the environment (a local .env file is
loaded by main.py before this module is imported).
"""

import os

# ============================================================
# Display
# ============================================================

LATE_HOUR_THRESHOLD: str = os.environ.get("TIMEGRID_LATE_HOUR", "22:00")
"""Personal blocks starting at or after this time are hidden unless rest is requested."""

# ============================================================
# Optimizer
# ============================================================

OPTIMIZER_TIMEOUT_SECONDS: float = float(os.environ.get("TIMEGRID_OPTIMIZER_TIMEOUT", "30"))
"""Upper bound for one reoptimization call; on expiry the fixed set is left untouched."""

GEMINI_MODEL: str = os.environ.get("TIMEGRID_GEMINI_MODEL", "gemini-2.5-flash")

GEMINI_API_KEY: str = os.environ.get("GEMINI_API_KEY", "")
"""When empty the deterministic conflict-filter optimizer is used instead of Gemini."""

# ============================================================
# Storage / logging
# ============================================================

DATA_DIR: str = os.environ.get("TIMEGRID_DATA_DIR", ".")

LOG_LEVEL: str = os.environ.get("TIMEGRID_LOG_LEVEL", "INFO")
