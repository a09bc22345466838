"""
Settings access point.

The canonical config lives in the root `config/` package:
  - `config/public_config.py` (non-sensitive defaults)
  - `config/secret_config.py` (secrets loaded from env / `.env.secrets`)
  - `config/settings.py` merges both and caches the result
"""

from __future__ import annotations

from config.settings import Settings as Settings
from config.settings import get_settings as get_settings
