# SPDX-License-Identifier: LGPL-3.0-or-later
# imgtailor/core/__init__.py
from .exceptions import Fatal, ImgTailorError
from .retry import RetryPolicy

__all__ = ["Fatal", "ImgTailorError", "RetryPolicy"]
