"""Shop video harvesting and product enrichment engine."""

from .enrichment import EnrichmentPipeline
from .handles import HandleLifecycleManager
from .pagination import PaginationOrchestrator

__all__ = ["EnrichmentPipeline", "HandleLifecycleManager", "PaginationOrchestrator"]
