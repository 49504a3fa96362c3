import logging
import os
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .errors import AnalysisNotFoundError, AnalysisValidationError, PersistenceError
from .models import ANALYSIS_STATUSES, AnalysisRecord, AnalysisRequest
from .services.detection import MAX_PAGE_SIZE, DetectionService, build_detection_service

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="FarmAssist Disease Detection API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_service() -> DetectionService:
    return build_detection_service(get_settings())


def _summary(record: AnalysisRecord) -> Dict[str, Any]:
    data = record.model_dump(mode="json", exclude={"processingSteps", "rawResponses", "finalResult"})
    data["analysisId"] = record.id
    return data


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.post("/api/disease-detection", status_code=201)
def create_analysis(req: AnalysisRequest, service: DetectionService = Depends(get_service)):
    if not service.providers_available():
        raise HTTPException(status_code=503, detail="No AI provider configured on server")
    try:
        record = service.analyze_image(req)
    except AnalysisValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        logger.exception("create_analysis failed")
        raise HTTPException(status_code=500, detail=str(e))
    return {"message": "Analysis finished" if record.status == "completed" else "Analysis failed",
            "analysis": _summary(record)}


@app.get("/api/disease-detection/stats/summary")
def analysis_stats(user: Optional[str] = None, service: DetectionService = Depends(get_service)):
    try:
        return service.get_stats(user)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/disease-detection")
def list_analyses(
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    status: Optional[str] = None,
    user: Optional[str] = None,
    service: DetectionService = Depends(get_service),
):
    if status is not None and status not in ANALYSIS_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Status must be one of: {', '.join(ANALYSIS_STATUSES)}",
        )
    try:
        page = service.list_analyses(user=user, status=status, limit=limit, offset=offset)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {
        "analyses": [_summary(r) for r in page["analyses"]],
        "pagination": page["pagination"],
    }


@app.get("/api/disease-detection/{analysis_id}")
def get_analysis(analysis_id: str, user: Optional[str] = None, service: DetectionService = Depends(get_service)):
    try:
        record = service.get_analysis(analysis_id, user)
    except AnalysisNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return record.model_dump(mode="json")


@app.post("/api/disease-detection/{analysis_id}/retry")
def retry_analysis(analysis_id: str, user: Optional[str] = None, service: DetectionService = Depends(get_service)):
    try:
        record = service.retry_failed_analysis(analysis_id, user)
    except AnalysisNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AnalysisValidationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PersistenceError as e:
        logger.exception("retry_analysis failed for %s", analysis_id)
        raise HTTPException(status_code=500, detail=str(e))
    return {"message": "Analysis retry finished", "analysis": _summary(record)}


@app.delete("/api/disease-detection/{analysis_id}")
def delete_analysis(analysis_id: str, user: Optional[str] = None, service: DetectionService = Depends(get_service)):
    try:
        service.delete_analysis(analysis_id, user)
    except AnalysisNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"message": "Analysis deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
