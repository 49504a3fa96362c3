"""
Vision Provider Adapters
Normalizes Groq, Google Gemini and Hugging Face image analysis behind one
`analyze(image, crop_type, location) -> DetectionResult` contract.

Network and credential problems raise `ProviderError` subclasses so the
selector can move on to the next backend. A reply that arrives but cannot be
read as a diagnosis never raises: it becomes the fallback result whose disease
is `FALLBACK_DISEASE`.
"""
import base64
import logging
import math
import time
from io import BytesIO
from typing import Any, Callable, Dict, List, Optional

import httpx
from PIL import Image, UnidentifiedImageError

from ..config import Settings
from ..errors import ProviderAuthError, ProviderError, ProviderParseError, ProviderTransientError
from ..models import (
    FALLBACK_DISEASE,
    PRIORITIES,
    SEVERITIES,
    DetectionResult,
    ImageRef,
    Location,
    TreatmentOption,
)
from .json_utils import extract_json_object, looks_like_safety_verdict

logger = logging.getLogger(__name__)

IMAGE_FETCH_TIMEOUTS = (10.0, 20.0, 30.0)
INLINE_IMAGE_MAX_BYTES = 700_000
INLINE_IMAGE_MAX_DIM = 1400
INLINE_IMAGE_TARGET_DIM = 1200

GROQ_PROMPT = """You are an expert agricultural pathologist. Analyze this plant image for diseases and provide detailed recommendations.

Context:
- Crop: {crop}
- Location: {district}, {state}

IMPORTANT: You must respond with ONLY valid JSON. No explanations, no markdown formatting, just pure JSON.

Required JSON structure:
{{
  "disease": "specific disease name or 'Healthy' if no disease detected",
  "confidence": 0.85,
  "severity": "low",
  "symptoms": ["visible symptom 1", "visible symptom 2"],
  "treatment": [
    {{"method": "Chemical Treatment", "description": "Apply copper-based fungicide every 7-10 days", "priority": "high"}},
    {{"method": "Cultural Practice", "description": "Remove affected leaves and improve air circulation", "priority": "medium"}}
  ],
  "fertilizers": ["NPK 10-10-10", "Organic compost", "Potassium sulfate"],
  "homeRemedies": ["Neem oil spray (2ml/liter)", "Baking soda solution (1tsp/liter)"],
  "prevention": ["Proper plant spacing", "Avoid overhead watering", "Regular pruning"]
}}

Analyze the image carefully and provide specific, actionable recommendations. Ensure all arrays have at least 2-3 items."""

GEMINI_PROMPT = """Analyze this plant image as an expert agricultural pathologist.

Context:
- Crop: {crop}
- Location: {district}, {state}

Return ONLY valid JSON with this exact structure:
{{
  "disease": "specific disease name or 'Healthy'",
  "confidence": 0.85,
  "severity": "low|medium|high",
  "symptoms": ["visible symptoms"],
  "treatment": [{{"method": "treatment type", "description": "details", "priority": "high|medium|low"}}],
  "fertilizers": ["specific fertilizer names"],
  "homeRemedies": ["natural remedies"],
  "prevention": ["preventive measures"]
}}

Be specific and provide at least 2-3 items in each array. No explanations outside JSON."""


def _prompt_context(crop_type: Optional[str], location: Optional[Location]) -> Dict[str, str]:
    return {
        "crop": crop_type or "Unknown",
        "district": (location.district if location else None) or "Unknown",
        "state": (location.state if location else None) or "Unknown",
    }


# ---------------------------------------------------------------------------
# Shared normalization
# ---------------------------------------------------------------------------

def coerce_confidence(value: Any) -> float:
    """Missing or non-numeric -> 0.5, then clamp into [0, 1]."""
    if value is None or isinstance(value, bool):
        return 0.5
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return 0.5
    if math.isnan(conf):
        return 0.5
    return min(max(conf, 0.0), 1.0)


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    out: List[str] = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("name") or item.get("description")
        if item is None:
            continue
        text = str(item).strip()
        if text:
            out.append(text)
    return out


def _treatment_list(value: Any) -> List[TreatmentOption]:
    if not isinstance(value, list):
        return []
    out: List[TreatmentOption] = []
    for item in value:
        if isinstance(item, str):
            if item.strip():
                out.append(TreatmentOption(method=item.strip(), description=item.strip()))
            continue
        if not isinstance(item, dict):
            continue
        method = str(item.get("method") or "General Treatment").strip()
        description = str(item.get("description") or item.get("method") or "Apply as recommended").strip()
        priority = str(item.get("priority") or "medium").strip().lower()
        if priority not in PRIORITIES:
            priority = "medium"
        out.append(TreatmentOption(method=method, description=description, priority=priority))
    return out


def normalize_detection(data: Dict[str, Any]) -> DetectionResult:
    """Funnel any provider's decoded reply into a `DetectionResult`.

    Every adapter goes through here so the defaults are identical regardless
    of backend. A missing disease is kept empty; the selector treats that as a
    failed attempt.
    """
    disease = data.get("disease") or data.get("diagnosis") or ""
    severity = str(data.get("severity") or "medium").strip().lower()
    if severity not in SEVERITIES:
        severity = "medium"
    prevention = data.get("prevention")
    if prevention is None:
        prevention = data.get("preventiveMeasures")
    error = data.get("error")
    return DetectionResult(
        disease=str(disease).strip(),
        confidence=coerce_confidence(data.get("confidence")),
        severity=severity,
        symptoms=_string_list(data.get("symptoms")),
        treatment=_treatment_list(data.get("treatment")),
        fertilizers=_string_list(data.get("fertilizers")),
        homeRemedies=_string_list(data.get("homeRemedies")),
        prevention=_string_list(prevention),
        error=str(error) if error else None,
    )


def fallback_result(reason: str) -> DetectionResult:
    """Well-formed result standing in for an analysis the provider could not give."""
    return DetectionResult(
        disease=FALLBACK_DISEASE,
        confidence=0.0,
        severity="unknown",
        symptoms=["Unable to analyze"],
        treatment=[
            TreatmentOption(
                method="Expert Consultation",
                description="Consult local agricultural expert",
                priority="high",
            )
        ],
        fertilizers=["Balanced NPK fertilizer"],
        homeRemedies=["Organic compost application"],
        prevention=["Regular monitoring"],
        error=reason,
    )


def raise_for_provider_status(provider: str, response: httpx.Response) -> None:
    """Map a non-2xx backend response onto the provider error taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return
    try:
        body = response.text[:200]
    except UnicodeDecodeError:
        body = "<binary body>"
    message = f"{provider} API error: {status} - {body}"
    if status in (401, 403):
        raise ProviderAuthError(message, provider=provider, status_code=status)
    if status == 429 or status >= 500:
        raise ProviderTransientError(message, provider=provider, status_code=status)
    raise ProviderError(message, provider=provider, status_code=status)


def prepare_inline_image(image_bytes: bytes) -> bytes:
    """Downscale and re-encode large images before sending them inline.

    Large inline payloads cause 400s from some providers. Bytes Pillow cannot
    open are returned unchanged.
    """
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            w, h = img.size
            if len(image_bytes) <= INLINE_IMAGE_MAX_BYTES and max(w, h) <= INLINE_IMAGE_MAX_DIM:
                return image_bytes
            img = img.convert("RGB")
            if max(w, h) > INLINE_IMAGE_TARGET_DIM:
                scale = INLINE_IMAGE_TARGET_DIM / float(max(w, h))
                img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)
            out = BytesIO()
            img.save(out, format="JPEG", quality=75, optimize=True)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.debug("[Vision] inline image preflight skipped: %s", e)
        return image_bytes
    encoded = out.getvalue()
    logger.info("[Vision] re-encoded inline image: %d -> %d bytes", len(image_bytes), len(encoded))
    return encoded


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class VisionProvider:
    """Base class for one AI backend."""

    name = "base"

    def __init__(self, api_key: str = "", timeout: float = 60.0, transport: Optional[httpx.BaseTransport] = None):
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def analyze(self, image: ImageRef, crop_type: Optional[str] = None, location: Optional[Location] = None) -> DetectionResult:
        raise NotImplementedError

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport, trust_env=False)

    def _send(self, client: httpx.Client, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"{self.name} request timed out: {e}", provider=self.name) from e
        except httpx.TransportError as e:
            raise ProviderTransientError(f"{self.name} request failed: {e}", provider=self.name) from e

    def _fetch_image_bytes(self, client: httpx.Client, image: ImageRef) -> bytes:
        """Dereference the image handle. URLs are fetched with growing timeouts."""
        if image.base64 and not image.url:
            try:
                return base64.b64decode(image.base64, validate=True)
            except ValueError as e:
                raise ProviderError(f"Invalid inline image data: {e}", provider=self.name) from e

        last_exc: Optional[Exception] = None
        for t in IMAGE_FETCH_TIMEOUTS:
            try:
                r = client.get(image.url, timeout=min(t, self.timeout))
            except httpx.TransportError as e:
                logger.warning("[Vision] fetch image_url attempt failed (timeout=%ss): %s", t, e)
                last_exc = e
                continue
            if r.status_code >= 400:
                raise ProviderError(f"Image fetch failed: {r.status_code}", provider=self.name, status_code=r.status_code)
            return r.content
        raise ProviderTransientError(f"Image fetch failed after retries: {last_exc}", provider=self.name)

    def _parse_content(self, content: Any) -> DetectionResult:
        if looks_like_safety_verdict(content):
            raise ProviderParseError(
                f"{self.name} returned a safety verdict instead of an analysis", provider=self.name
            )
        try:
            data = extract_json_object(content)
        except ValueError as e:
            raise ProviderParseError(f"Failed to parse {self.name} response: {e}", provider=self.name) from e
        return normalize_detection(data)

    def parse_content(self, content: Any) -> DetectionResult:
        """Parse raw model text, substituting the fallback result when unreadable."""
        try:
            return self._parse_content(content)
        except ProviderParseError as e:
            preview = str(content)[:200] if content is not None else ""
            logger.warning("[%s] %s; content preview: %r", self.name, e, preview)
            return fallback_result(str(e))


class GroqProvider(VisionProvider):
    """Groq OpenAI-compatible chat completions with a Llama vision model."""

    name = "groq"

    def __init__(self, api_key: str = "", model: str = "", api_url: str = "", **kwargs):
        super().__init__(api_key=api_key, **kwargs)
        self.model = model
        self.api_url = api_url

    def build_prompt(self, crop_type: Optional[str], location: Optional[Location]) -> str:
        return GROQ_PROMPT.format(**_prompt_context(crop_type, location))

    def analyze(self, image: ImageRef, crop_type: Optional[str] = None, location: Optional[Location] = None) -> DetectionResult:
        if not self.api_key:
            raise ProviderAuthError("GROQ_API_KEY not configured", provider=self.name)

        image_url = image.as_data_url()
        if image.base64 and not image.url:
            # Oversized inline payloads are rejected with a 400
            with self._client() as client:
                image_bytes = prepare_inline_image(self._fetch_image_bytes(client, image))
            image_url = f"data:image/jpeg;base64,{base64.b64encode(image_bytes).decode('utf-8')}"

        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self.build_prompt(crop_type, location)},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ],
            "max_tokens": 1500,
            "temperature": 0.1,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        logger.info("[Groq] calling %s with key %s...", self.model, self.api_key[:6])
        with self._client() as client:
            response = self._send(client, "POST", self.api_url, json=payload, headers=headers)
        logger.info("[Groq] response status: %s", response.status_code)
        raise_for_provider_status(self.name, response)

        try:
            body = response.json()
        except ValueError:
            return self.parse_content(response.text)
        choices = body.get("choices") or []
        content = choices[0].get("message", {}).get("content") if choices else None
        if not content:
            return fallback_result("No content in Groq API response")
        return self.parse_content(content)


class GeminiProvider(VisionProvider):
    """Google Gemini generateContent over REST.

    Supports several API keys (a 401/403/429 on one key moves on to the next)
    and retries HTTP 503 "model overloaded" with linearly growing backoff.
    """

    name = "gemini"

    def __init__(
        self,
        api_keys: Optional[List[str]] = None,
        model: str = "",
        api_base: str = "",
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs,
    ):
        keys = list(api_keys or [])
        super().__init__(api_key=keys[0] if keys else "", **kwargs)
        self.api_keys = keys
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    def build_prompt(self, crop_type: Optional[str], location: Optional[Location]) -> str:
        return GEMINI_PROMPT.format(**_prompt_context(crop_type, location))

    def analyze(self, image: ImageRef, crop_type: Optional[str] = None, location: Optional[Location] = None) -> DetectionResult:
        if not self.api_keys:
            raise ProviderAuthError("GEMINI_API_KEY not configured", provider=self.name)

        with self._client() as client:
            image_bytes = prepare_inline_image(self._fetch_image_bytes(client, image))
            payload = {
                "contents": [
                    {
                        "parts": [
                            {"text": self.build_prompt(crop_type, location)},
                            {
                                "inline_data": {
                                    "mime_type": "image/jpeg",
                                    "data": base64.b64encode(image_bytes).decode("utf-8"),
                                }
                            },
                        ]
                    }
                ],
                "generationConfig": {"temperature": 0.1, "maxOutputTokens": 1500},
            }

            last_error: Optional[ProviderError] = None
            for idx, key in enumerate(self.api_keys):
                try:
                    return self._generate(client, key, idx, payload)
                except (ProviderAuthError, ProviderTransientError) as e:
                    last_error = e
                    if e.status_code in (401, 403, 429) and idx + 1 < len(self.api_keys):
                        logger.warning("[Gemini] key #%d rejected (%s); trying next key", idx + 1, e.status_code)
                        continue
                    raise
        raise last_error or ProviderError("Gemini call failed with no available keys", provider=self.name)

    def _generate(self, client: httpx.Client, key: str, idx: int, payload: Dict[str, Any]) -> DetectionResult:
        url = f"{self.api_base}/{self.model}:generateContent"
        last_error: Optional[ProviderTransientError] = None
        for attempt in range(1, self.max_attempts + 1):
            logger.info("[Gemini] attempt %d/%d with key #%d", attempt, self.max_attempts, idx + 1)
            try:
                response = self._send(client, "POST", url, params={"key": key}, json=payload,
                                      headers={"Content-Type": "application/json"})
            except ProviderTransientError as e:
                last_error = e
            else:
                if response.status_code == 503:
                    last_error = ProviderTransientError(
                        "Gemini model temporarily overloaded (503)", provider=self.name, status_code=503
                    )
                else:
                    raise_for_provider_status(self.name, response)
                    return self._parse_body(response)

            if attempt < self.max_attempts:
                delay = self.backoff_seconds * attempt
                logger.warning("[Gemini] attempt %d failed (%s); retrying in %.1fs", attempt, last_error, delay)
                self.sleep(delay)

        raise ProviderTransientError(
            f"Gemini unavailable after {self.max_attempts} attempts: {last_error}",
            provider=self.name,
            status_code=last_error.status_code if last_error else None,
        )

    def _parse_body(self, response: httpx.Response) -> DetectionResult:
        try:
            body = response.json()
        except ValueError:
            return self.parse_content(response.text)

        block_reason = (body.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            return fallback_result(f"Gemini blocked the request: {block_reason}")

        candidates = body.get("candidates") or []
        if not candidates:
            return fallback_result("No candidates in Gemini response")
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        if not text:
            reason = candidate.get("finishReason") or "empty"
            return fallback_result(f"No content in Gemini response (finishReason={reason})")
        return self.parse_content(text)


class HuggingFaceProvider(VisionProvider):
    """Hugging Face hosted image classification.

    General-purpose classifiers return ImageNet-style labels, so the top label
    is mapped onto a disease name with keyword rules and the advice fields are
    filled from templates.
    """

    name = "huggingface"

    DISEASE_KEYWORDS = (
        ("healthy", "Healthy plant"),
        ("rust", "Plant rust"),
        ("blight", "Blight"),
        ("spot", "Leaf spot"),
        ("yellow", "Yellowing disease"),
        ("brown", "Brown spot disease"),
        ("leaf", "Leaf disease"),
    )

    def __init__(self, api_key: str = "", models: Optional[List[str]] = None, api_url: str = "", **kwargs):
        super().__init__(api_key=api_key, **kwargs)
        self.models = list(models or [])
        self.api_url = api_url.rstrip("/")

    def analyze(self, image: ImageRef, crop_type: Optional[str] = None, location: Optional[Location] = None) -> DetectionResult:
        if not self.api_key:
            raise ProviderAuthError("HUGGINGFACE_API_KEY not configured", provider=self.name)

        with self._client() as client:
            image_bytes = self._fetch_image_bytes(client, image)
            classification = self._classify(client, image_bytes)

        if not isinstance(classification, list) or not classification or not isinstance(classification[0], dict):
            return fallback_result(f"Unexpected HuggingFace classification output: {str(classification)[:120]}")
        return self.format_classification(classification[0], crop_type)

    def _classify(self, client: httpx.Client, image_bytes: bytes) -> Any:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/octet-stream",
        }
        last_error: Optional[ProviderError] = None
        for model in self.models:
            try:
                response = self._send(client, "POST", f"{self.api_url}/{model}", content=image_bytes, headers=headers)
                raise_for_provider_status(self.name, response)
            except ProviderAuthError:
                raise
            except ProviderError as e:
                logger.warning("[HuggingFace] model %s failed, trying next: %s", model, e)
                last_error = e
                continue
            try:
                return response.json()
            except ValueError:
                return response.text
        raise ProviderTransientError(f"All HuggingFace models failed: {last_error}", provider=self.name)

    def interpret_label(self, label: Optional[str], crop_type: Optional[str]) -> str:
        if not label:
            return f"{crop_type or 'Crop'} condition unknown"
        lower = label.lower()
        for keyword, disease in self.DISEASE_KEYWORDS:
            if keyword in lower:
                return disease
        return f"Possible {label.replace('_', ' ')} condition"

    @staticmethod
    def severity_for(score: float) -> str:
        if score > 0.8:
            return "high"
        if score > 0.5:
            return "medium"
        return "low"

    def format_classification(self, top: Dict[str, Any], crop_type: Optional[str]) -> DetectionResult:
        label = top.get("label")
        score = coerce_confidence(top.get("score"))
        symptoms = ["Visible leaf changes", "Abnormal coloration"]
        lower = (label or "").lower()
        if "spot" in lower:
            symptoms.append("Spotted pattern on leaves")
        if "yellow" in lower:
            symptoms.append("Yellowing of foliage")
        return normalize_detection({
            "disease": self.interpret_label(label, crop_type),
            "confidence": score,
            "severity": self.severity_for(score),
            "symptoms": symptoms,
            "treatment": [
                {"method": "Fungicide Treatment", "description": f"Apply appropriate fungicide for {crop_type or 'the crop'}", "priority": "high"},
                {"method": "Cultural Practice", "description": "Improve plant spacing and air circulation", "priority": "medium"},
            ],
            "fertilizers": [
                "NPK 10-10-10 (Balanced fertilizer)",
                "Organic compost",
                "Potassium sulfate for disease resistance",
            ],
            "homeRemedies": [
                "Neem oil spray (organic treatment)",
                "Baking soda solution (1 tsp per liter)",
                "Garlic extract spray",
            ],
            "prevention": [
                "Maintain proper plant spacing",
                "Ensure good drainage",
                "Regular inspection and early detection",
                "Crop rotation practices",
            ],
        })


def build_providers(settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> Dict[str, VisionProvider]:
    """Construct every adapter once from configuration, keyed by provider name."""
    common = {"timeout": settings.provider_timeout_seconds, "transport": transport}
    return {
        "groq": GroqProvider(
            api_key=settings.groq_api_key,
            model=settings.groq_model,
            api_url=settings.groq_api_url,
            **common,
        ),
        "gemini": GeminiProvider(
            api_keys=settings.gemini_api_keys,
            model=settings.gemini_model,
            api_base=settings.gemini_api_base,
            max_attempts=settings.gemini_max_attempts,
            backoff_seconds=settings.gemini_backoff_seconds,
            **common,
        ),
        "huggingface": HuggingFaceProvider(
            api_key=settings.huggingface_api_key,
            models=settings.huggingface_models,
            api_url=settings.huggingface_api_url,
            **common,
        ),
    }
