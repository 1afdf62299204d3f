"""
Services package for the cookbook extraction application.

Contains:
- pdf_service: Page-by-page PDF rendering
- storage: Reading uploaded cookbook files
- ai: OpenAI page classification and recipe images
- extraction: The extraction job engine
- jobs: Job lifecycle operations and their preconditions
"""

from .extraction import ExtractionEngine
from .jobs import JobService
from .pdf_service import PDFService

__all__ = ["ExtractionEngine", "JobService", "PDFService"]
