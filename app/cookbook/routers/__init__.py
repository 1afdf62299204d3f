"""
Routers package for FastAPI endpoints.

Organized by domain:
- processing: Extraction jobs, live progress stream and maintenance
"""

from . import processing

__all__ = ["processing"]
