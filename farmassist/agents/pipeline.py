"""
Disease-analysis pipeline engine for FarmAssist

Runs one analysis through a fixed sequence of stages (initialization,
imageAnalysis, diseaseDetection, recommendations, finalization). Routing is
driven by the TRANSITIONS table below; every stage appends exactly one step
record to the store, and any stage failure ends in the error handler, which
marks the record failed without discarding earlier steps.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..errors import (
    AllProvidersFailedError,
    AnalysisValidationError,
    InvalidTransitionError,
    PersistenceError,
    StatusTransitionError,
)
from ..models import (
    INCONCLUSIVE_DISEASE,
    Detection,
    DetectionResult,
    ImageRef,
    Location,
    ProcessingStep,
    RecommendedTreatment,
    Recommendations,
    utcnow,
)
from ..services.providers import coerce_confidence
from ..services.selector import ProviderSelector
from ..services.store import AnalysisStore

logger = logging.getLogger(__name__)

INCONCLUSIVE_THRESHOLD = 0.3
RELIABLE_THRESHOLD = 0.8

FALLBACK_FERTILIZERS = [
    "Balanced NPK fertilizer (10-10-10)",
    "Organic compost for soil health",
]
FALLBACK_HOME_REMEDIES = [
    "Neem oil spray (organic treatment)",
    "Proper plant hygiene maintenance",
]
FALLBACK_PREVENTION = [
    "Regular plant inspection",
    "Maintain proper plant spacing",
    "Ensure good drainage and air circulation",
]


class Stage(str, Enum):
    INITIALIZATION = "initialization"
    IMAGE_ANALYSIS = "imageAnalysis"
    DISEASE_DETECTION = "diseaseDetection"
    RECOMMENDATIONS = "recommendations"
    FINALIZATION = "finalization"
    COMPLETED = "completed"
    ERROR = "error"
    ERROR_HANDLED = "error_handled"


class Event(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.ERROR_HANDLED})

TRANSITIONS: Dict[tuple, Stage] = {
    (Stage.INITIALIZATION, Event.SUCCEEDED): Stage.IMAGE_ANALYSIS,
    (Stage.INITIALIZATION, Event.FAILED): Stage.ERROR,
    (Stage.IMAGE_ANALYSIS, Event.SUCCEEDED): Stage.DISEASE_DETECTION,
    (Stage.IMAGE_ANALYSIS, Event.FAILED): Stage.ERROR,
    (Stage.DISEASE_DETECTION, Event.SUCCEEDED): Stage.RECOMMENDATIONS,
    (Stage.DISEASE_DETECTION, Event.FAILED): Stage.ERROR,
    (Stage.RECOMMENDATIONS, Event.SUCCEEDED): Stage.FINALIZATION,
    (Stage.RECOMMENDATIONS, Event.FAILED): Stage.ERROR,
    (Stage.FINALIZATION, Event.SUCCEEDED): Stage.COMPLETED,
    (Stage.FINALIZATION, Event.FAILED): Stage.ERROR,
    (Stage.ERROR, Event.SUCCEEDED): Stage.ERROR_HANDLED,
}


def validate_transitions(table: Dict[tuple, Stage]) -> None:
    """Reject a table with a dangling target, a dead-end stage or an exit from a terminal stage."""
    sources = set()
    for (stage, event), target in table.items():
        if not isinstance(stage, Stage) or not isinstance(event, Event) or not isinstance(target, Stage):
            raise ValueError(f"Malformed transition: ({stage!r}, {event!r}) -> {target!r}")
        if stage in TERMINAL_STAGES:
            raise ValueError(f"Terminal stage {stage.value} has an outgoing edge")
        sources.add(stage)
    for stage in Stage:
        if stage not in TERMINAL_STAGES and stage not in sources:
            raise ValueError(f"Stage {stage.value} has no outgoing edge")
    for (stage, _), target in table.items():
        if target not in TERMINAL_STAGES and target not in sources:
            raise ValueError(f"Transition from {stage.value} leads to dead end {target.value}")


validate_transitions(TRANSITIONS)


def next_stage(stage: Stage, event: Event) -> Stage:
    try:
        return TRANSITIONS[(stage, event)]
    except KeyError:
        raise InvalidTransitionError(stage, event) from None


@dataclass
class AnalysisState:
    analysis_id: str
    image: Optional[ImageRef]
    crop_type: Optional[str] = None
    location: Optional[Location] = None
    preferred_provider: Optional[str] = "groq"
    stage: Stage = Stage.INITIALIZATION
    image_analysis: Optional[DetectionResult] = None
    detection: Optional[Detection] = None
    recommendations: Optional[Recommendations] = None
    final_result: Optional[Dict[str, Any]] = None
    completed_stages: List[str] = field(default_factory=list)
    error: Optional[str] = None
    failed_stage: Optional[Stage] = None
    claimed: bool = False


# -- pure stage helpers -------------------------------------------------------

def detect_disease(analysis: DetectionResult, fallback_provider: Optional[str] = None) -> Detection:
    """Apply the confidence thresholds to a provider result."""
    if not analysis.disease:
        raise AnalysisValidationError("No disease detection results available from image analysis")

    confidence = coerce_confidence(analysis.confidence)
    detection = Detection(
        disease=analysis.disease,
        confidence=confidence,
        severity=analysis.severity or "medium",
        symptoms=list(analysis.symptoms),
        analysisProvider=analysis.provider or fallback_provider,
    )
    if confidence < INCONCLUSIVE_THRESHOLD:
        detection.disease = INCONCLUSIVE_DISEASE
        detection.severity = "unknown"
        detection.needsExpertReview = True
    elif confidence >= RELIABLE_THRESHOLD:
        detection.severity = "high"
        detection.reliable = True
    return detection


def build_recommendations(
    analysis: DetectionResult,
    crop_type: Optional[str] = None,
    location: Optional[Location] = None,
) -> Recommendations:
    """Annotate provider advice for the farmer's area and fill empty lists.

    Builds fresh lists on every call, so running it twice on the same input
    gives the same output.
    """
    area = location.label() if location else "your area"
    state_name = (location.state if location else None) or "India"

    treatment = [
        RecommendedTreatment(
            method=t.method or "General Treatment",
            description=t.description or t.method or "Apply as recommended",
            priority=t.priority,
            cropSpecific=crop_type or "general",
            availabilityNote=f"Available at agricultural stores in {area}",
        )
        for t in analysis.treatment
    ]
    if not treatment:
        treatment = [
            RecommendedTreatment(
                method="General Treatment",
                description=f"Consult local agricultural expert for {crop_type or 'crop'} disease management",
                priority="high",
                cropSpecific=crop_type or "general",
                availabilityNote=f"Available at agricultural stores in {area}",
            )
        ]

    fertilizers = [f"{name} (available in {state_name})" for name in analysis.fertilizers]

    return Recommendations(
        treatment=treatment,
        fertilizers=fertilizers or list(FALLBACK_FERTILIZERS),
        homeRemedies=list(analysis.homeRemedies) or list(FALLBACK_HOME_REMEDIES),
        preventiveMeasures=list(analysis.prevention) or list(FALLBACK_PREVENTION),
    )


# -- engine -------------------------------------------------------------------

@dataclass
class StageCommit:
    """What a stage hands back to the engine: its step result plus the record
    fields to write in the same transaction as the step."""

    result: Dict[str, Any]
    fields: Dict[str, Any] = field(default_factory=dict)
    expected_status: Optional[str] = None


class AnalysisPipeline:
    def __init__(self, store: AnalysisStore, selector: ProviderSelector):
        self.store = store
        self.selector = selector
        self._handlers: Dict[Stage, Callable[[AnalysisState], StageCommit]] = {
            Stage.INITIALIZATION: self._initialize,
            Stage.IMAGE_ANALYSIS: self._analyze_image,
            Stage.DISEASE_DETECTION: self._process_detection,
            Stage.RECOMMENDATIONS: self._generate_recommendations,
            Stage.FINALIZATION: self._finalize,
        }

    def run(
        self,
        analysis_id: str,
        image: Optional[ImageRef],
        crop_type: Optional[str] = None,
        location: Optional[Location] = None,
        preferred_provider: Optional[str] = "groq",
    ) -> Dict[str, Any]:
        """Drive one analysis to `completed` or `failed`. Never raises."""
        state = AnalysisState(
            analysis_id=analysis_id,
            image=image,
            crop_type=crop_type,
            location=location,
            preferred_provider=preferred_provider,
        )
        logger.info("[Pipeline] starting analysis %s (preferred provider: %s)", analysis_id, preferred_provider)

        while state.stage not in TERMINAL_STAGES and state.stage is not Stage.ERROR:
            stage = state.stage
            try:
                commit = self._handlers[stage](state)
                self.store.append_step(
                    analysis_id,
                    ProcessingStep(step=stage.value, status="completed", result=commit.result),
                    fields=commit.fields,
                    expected_status=commit.expected_status,
                )
            except Exception as e:
                logger.exception("[Pipeline] stage %s failed for analysis %s", stage.value, analysis_id)
                state.error = str(e) or type(e).__name__
                state.failed_stage = stage
                self._record_failed_step(state, stage)
                state.stage = next_stage(stage, Event.FAILED)
                continue
            if stage is Stage.INITIALIZATION:
                state.claimed = True
            state.completed_stages.append(stage.value)
            state.stage = next_stage(stage, Event.SUCCEEDED)

        if state.stage is Stage.ERROR:
            persisted = self._handle_error(state)
            state.stage = next_stage(Stage.ERROR, Event.SUCCEEDED)
            outcome = {
                "success": False,
                "message": "Analysis failed",
                "error": "ANALYSIS_FAILED",
                "details": state.error,
            }
            if not persisted:
                outcome["persisted"] = False
            return outcome

        logger.info("[Pipeline] analysis %s completed", analysis_id)
        return {"success": True, "data": state.final_result}

    # -- stages ---------------------------------------------------------------

    def _initialize(self, state: AnalysisState) -> StageCommit:
        if not state.analysis_id:
            raise AnalysisValidationError("Analysis ID is required")
        if state.image is None:
            raise AnalysisValidationError("Image URL or data is required")

        record = self.store.get_record(state.analysis_id)
        if record.status != "pending":
            raise AnalysisValidationError(
                f"Analysis {state.analysis_id} is {record.status}; only pending analyses can be started"
            )
        # Claimed only if still pending when the step is written
        return StageCommit(
            result={"message": "Analysis pipeline started"},
            fields={"status": "processing"},
            expected_status="pending",
        )

    def _analyze_image(self, state: AnalysisState) -> StageCommit:
        logger.info("[Pipeline] image analysis for %s: %s", state.analysis_id, state.image.describe())
        try:
            result = self.selector.analyze_with_fallback(
                state.image, state.crop_type, state.location, state.preferred_provider
            )
        except AllProvidersFailedError as e:
            self.store.set_raw_response(
                state.analysis_id, "imageAnalysis", {"error": str(e), "attempts": e.attempts}
            )
            raise

        self.store.set_raw_response(state.analysis_id, "imageAnalysis", result.model_dump(mode="json"))
        if not result.disease:
            self.store.update_fields(state.analysis_id, {"aiProvider": result.provider})
            raise AnalysisValidationError("AI provider returned incomplete analysis - missing disease information")

        state.image_analysis = result
        return StageCommit(
            result={"provider": result.provider, "detected": result.disease, "confidence": result.confidence},
            fields={"aiProvider": result.provider},
        )

    def _process_detection(self, state: AnalysisState) -> StageCommit:
        if state.image_analysis is None:
            raise AnalysisValidationError("No disease detection results available from image analysis")
        detection = detect_disease(state.image_analysis, state.preferred_provider)
        state.detection = detection
        return StageCommit(
            result={"disease": detection.disease, "confidence": detection.confidence, "severity": detection.severity},
            fields={"detection": detection},
        )

    def _generate_recommendations(self, state: AnalysisState) -> StageCommit:
        if state.image_analysis is None:
            raise AnalysisValidationError("No image analysis available for recommendations")
        recommendations = build_recommendations(state.image_analysis, state.crop_type, state.location)
        state.recommendations = recommendations
        return StageCommit(
            result={
                "treatmentOptions": len(recommendations.treatment),
                "fertilizerOptions": len(recommendations.fertilizers),
                "homeRemediesCount": len(recommendations.homeRemedies),
            },
            fields={"recommendations": recommendations},
        )

    def _finalize(self, state: AnalysisState) -> StageCommit:
        if state.detection is None or state.recommendations is None:
            raise AnalysisValidationError("Cannot finalize - missing detection or recommendations")

        provider = state.detection.analysisProvider or state.preferred_provider
        final_result = {
            "analysisId": state.analysis_id,
            "detection": state.detection.model_dump(mode="json"),
            "recommendations": state.recommendations.model_dump(mode="json"),
            "metadata": {
                "provider": provider,
                "processingSteps": state.completed_stages + [Stage.FINALIZATION.value],
                "completedAt": utcnow().isoformat(),
                "confidence": state.detection.confidence,
                "cropType": state.crop_type,
                "location": state.location.model_dump(mode="json") if state.location else None,
            },
        }
        state.final_result = final_result
        return StageCommit(
            result={"message": "Analysis completed successfully"},
            fields={"status": "completed", "aiProvider": provider, "finalResult": final_result},
            expected_status="processing",
        )

    # -- step records and error handling ----------------------------------------

    def _record_failed_step(self, state: AnalysisState, stage: Stage) -> None:
        try:
            self.store.append_step(
                state.analysis_id,
                ProcessingStep(step=stage.value, status="failed", error=state.error),
            )
        except PersistenceError as e:
            logger.error("[Pipeline] could not record failed %s step for %s: %s", stage.value, state.analysis_id, e)

    def _handle_error(self, state: AnalysisState) -> bool:
        """Mark the record failed and append the error_handling step. Returns False if nothing could be written.

        Only the status this run owns is moved to failed: `processing` once
        initialization claimed the record, `pending` before that. A record
        another run has since claimed or finished keeps its status.
        """
        message = state.error or "Unknown error occurred"
        failed_stage = state.failed_stage.value if state.failed_stage else None
        owned_status = "processing" if state.claimed else "pending"
        logger.error("[Pipeline] analysis %s failed at %s: %s", state.analysis_id, failed_stage, message)

        def error_step(marked: bool) -> ProcessingStep:
            return ProcessingStep(
                step="error_handling",
                status="completed",
                error=message,
                result={"errorStep": failed_stage, "statusUpdated": marked},
            )

        try:
            try:
                self.store.append_step(
                    state.analysis_id,
                    error_step(True),
                    fields={"status": "failed", "error": message},
                    expected_status=owned_status,
                )
            except StatusTransitionError as e:
                logger.warning("[Pipeline] analysis %s not marked failed: %s", state.analysis_id, e)
                self.store.append_step(state.analysis_id, error_step(False))
        except PersistenceError as e:
            logger.critical("[Pipeline] could not persist failure of analysis %s: %s", state.analysis_id, e)
            return False
        return True


def run_pipeline(
    pipeline: AnalysisPipeline,
    analysis_id: str,
    image: Optional[ImageRef],
    crop_type: Optional[str] = None,
    location: Optional[Location] = None,
    preferred_provider: Optional[str] = "groq",
) -> Dict[str, Any]:
    return pipeline.run(analysis_id, image, crop_type, location, preferred_provider)
