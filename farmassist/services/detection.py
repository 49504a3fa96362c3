"""
Disease detection service: creates analysis records, triggers the pipeline
and serves the read/retry/delete operations behind the HTTP routes.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..agents.pipeline import AnalysisPipeline
from ..config import Settings
from ..errors import AnalysisNotFoundError, AnalysisValidationError, StatusTransitionError
from ..models import AnalysisRecord, AnalysisRequest, ProcessingStep
from .providers import build_providers
from .selector import ProviderSelector
from .store import AnalysisStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class DetectionService:
    def __init__(self, store: AnalysisStore, selector: ProviderSelector, pipeline: AnalysisPipeline,
                 default_provider: str = "groq"):
        self.store = store
        self.selector = selector
        self.pipeline = pipeline
        self.default_provider = default_provider

    def providers_available(self) -> List[str]:
        return self.selector.configured()

    def analyze_image(self, request: AnalysisRequest) -> AnalysisRecord:
        """Create a pending record, run the pipeline on it and return the refreshed record.

        Pipeline failures do not raise; the returned record is `failed` with its error set.
        """
        provider = request.provider if "provider" in request.model_fields_set else self.default_provider
        analysis_id = self.store.create_record({
            "user": request.user,
            "imageUrl": request.imageUrl,
            "imageBase64": None if request.imageUrl else request.imageBase64,
            "crop": request.crop,
            "location": request.location,
            "aiProvider": provider,
            "status": "pending",
        })
        logger.info("[Detection] created analysis %s", analysis_id)

        outcome = self.pipeline.run(analysis_id, request.image_ref(), request.crop, request.location, provider)
        if not outcome["success"]:
            logger.warning("[Detection] analysis %s failed: %s", analysis_id, outcome.get("details"))
        return self.store.get_record(analysis_id)

    def get_analysis(self, analysis_id: str, user: Optional[str] = None) -> AnalysisRecord:
        record = self.store.get_record(analysis_id)
        if user is not None and record.user != user:
            raise AnalysisNotFoundError(analysis_id)
        return record

    def list_analyses(self, user: Optional[str] = None, status: Optional[str] = None,
                      limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        records, total = self.store.list_records(user=user, status=status, limit=limit, offset=offset)
        return {
            "analyses": records,
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "hasMore": offset + limit < total,
            },
        }

    def get_stats(self, user: Optional[str] = None) -> Dict[str, Any]:
        counts = self.store.count_by_status(user)
        total = counts["total"]
        stats: Dict[str, Any] = dict(counts)
        stats["successRate"] = round(counts["completed"] / total * 100, 2) if total else 0
        return stats

    def retry_failed_analysis(self, analysis_id: str, user: Optional[str] = None) -> AnalysisRecord:
        """Re-run a failed analysis from initialization, keeping its step history."""
        record = self.get_analysis(analysis_id, user)
        if record.status != "failed":
            raise AnalysisValidationError("Only failed analyses can be retried")
        image = record.image_ref()
        if image is None:
            raise AnalysisValidationError(f"Analysis {analysis_id} has no stored image to retry")

        try:
            self.store.append_step(
                analysis_id,
                ProcessingStep(step="retry_initiated", status="completed", result={"message": "Analysis retry initiated"}),
                fields={"status": "pending", "error": None},
                expected_status="failed",
            )
        except StatusTransitionError:
            raise AnalysisValidationError("Only failed analyses can be retried") from None
        logger.info("[Detection] retrying analysis %s", analysis_id)

        provider = record.aiProvider or self.default_provider
        self.pipeline.run(analysis_id, image, record.crop, record.location, provider)
        return self.store.get_record(analysis_id)

    def delete_analysis(self, analysis_id: str, user: Optional[str] = None) -> None:
        self.store.delete_record(analysis_id, user)
        logger.info("[Detection] deleted analysis %s", analysis_id)


def build_detection_service(settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> DetectionService:
    """Wire store, adapters, selector and pipeline once at startup."""
    store = AnalysisStore(settings.db_path)
    selector = ProviderSelector(build_providers(settings, transport=transport))
    pipeline = AnalysisPipeline(store, selector)
    logger.info("[Detection] providers configured: %s", ", ".join(selector.configured()) or "none")
    return DetectionService(store, selector, pipeline, default_provider=settings.default_provider)
