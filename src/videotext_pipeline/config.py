"""
Settings shim.

The canonical config lives in the top-level `config/` package:
  - `config/public_config.py` (non-sensitive defaults)
  - `config/secret_config.py` (secrets loaded from env / `.env.secrets`)
  - `config/settings.py` exposes `get_settings()`
"""

from __future__ import annotations

from config.settings import Settings as Settings
from config.settings import get_safe_config_report as get_safe_config_report
from config.settings import get_settings as get_settings
