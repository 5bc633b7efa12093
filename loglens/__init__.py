"""
LogLens - log ingestion, incident correlation and error analytics.
"""

__version__ = "0.1.0"
