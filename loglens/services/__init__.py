"""
Service layer - ingestion and incident operations built on the engines.
"""

from .incident_service import IncidentService
from .ingestion_service import IngestionService, IngestResult

__all__ = ["IncidentService", "IngestionService", "IngestResult"]
