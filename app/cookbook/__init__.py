"""
Cookbook Extraction Backend Application.

A FastAPI service that extracts structured recipes from scanned
cookbook PDFs page by page using AI (OpenAI vision models).
"""

__version__ = "1.0.0"
