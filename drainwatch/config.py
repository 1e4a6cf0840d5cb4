"""
Central configuration for the drainage monitoring core.

All cadences, thresholds and backend settings live here. Deployment-specific
values can be overridden from the environment.
"""

import os

# ─── Cadences (seconds) ──────────────────────────────────────────────
POLL_INTERVAL_S = 2.0                # Weight sample poll
TIMER_TICK_S = 1.0                   # Treatment timer tick
PROBE_INTERVAL_S = 5.0               # Device connectivity probe
COMPLETION_GRACE_S = 2.0             # Delay before "finished" callback
REMINDER_DISMISS_S = 10.0            # Reminder banner auto-dismiss
MIN_PROBE_SPACING_S = 1.0            # Manual/automatic probes share results inside this window

# ─── Sample filtering ────────────────────────────────────────────────
HISTORY_SIZE = 5                     # Sliding window capacity
STABLE_THRESHOLD_KG = 0.05           # Max consecutive delta for a steady flow

# ─── Drainage thresholds ─────────────────────────────────────────────
REMINDER_THRESHOLD_G = 1000.0        # "Prepare to clamp" reminder
COMPLETION_THRESHOLD_G = 1500.0      # Drainage complete
ZERO_THRESHOLD_KG = 0.01             # Bag removed / scale empty
MAX_PLAUSIBLE_MASS_KG = 10.0         # Anything heavier is a bad reading

# ─── Device errors ───────────────────────────────────────────────────
UNREACHABLE_WARNING_AFTER = 3        # Consecutive failed polls before warning

# ─── Backend ─────────────────────────────────────────────────────────
API_BASE_URL = os.environ.get("DRAINWATCH_API_URL", "http://localhost:8000/api")
API_TOKEN = os.environ.get("DRAINWATCH_API_TOKEN", "")
DEVICE_ID = os.environ.get("DRAINWATCH_DEVICE_ID", "pd_scale_01")
HTTP_TIMEOUT_S = float(os.environ.get("DRAINWATCH_HTTP_TIMEOUT_S", "10"))

# ─── Logging ─────────────────────────────────────────────────────────
EVENT_LOG_DIR = os.environ.get("DRAINWATCH_EVENT_LOG_DIR", "./treatment_logs")
EVENT_BUFFER_SIZE = 200
LOG_LEVEL = os.environ.get("DRAINWATCH_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
MASS_HISTORY_SIZE = 300              # Points kept for the console chart
