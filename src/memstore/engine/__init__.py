"""Engine domain: resolution, ingestion, retrieval and maintenance."""

from memstore.engine.ingestion import BackfillResult
from memstore.engine.ingestion import IngestionPipeline
from memstore.engine.maintenance import decay_step
from memstore.engine.maintenance import MaintenanceEngine
from memstore.engine.resolver import ConflictResolver
from memstore.engine.resolver import ConsolidationPlan
from memstore.engine.resolver import Neighbor
from memstore.engine.resolver import Outcome
from memstore.engine.resolver import Resolution
from memstore.engine.retrieval import RetrievalService

__all__ = [
    "BackfillResult",
    "ConflictResolver",
    "ConsolidationPlan",
    "IngestionPipeline",
    "MaintenanceEngine",
    "Neighbor",
    "Outcome",
    "Resolution",
    "RetrievalService",
    "decay_step",
]
