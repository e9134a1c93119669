# SPDX-License-Identifier: LGPL-3.0-or-later
# imgtailor/config/__init__.py
from .config_loader import Config, deep_merge, load_settings, parse_settings

__all__ = ["Config", "deep_merge", "load_settings", "parse_settings"]
