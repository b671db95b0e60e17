"""Serverless entry point: the platform looks for a module-level `app`"""

import os
import sys

# Project root holds backend_api and the shared/config packages
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend_api import app  # noqa: E402

__all__ = ['app']
