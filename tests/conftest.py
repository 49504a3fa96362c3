import json

import httpx
import pytest

from farmassist.agents.pipeline import AnalysisPipeline
from farmassist.config import Settings
from farmassist.services.detection import DetectionService
from farmassist.services.providers import build_providers
from farmassist.services.selector import ProviderSelector
from farmassist.services.store import AnalysisStore

GROQ_HOST = "api.groq.com"
GEMINI_HOST = "generativelanguage.googleapis.com"
HF_HOST = "router.huggingface.co"
IMAGE_URL = "http://x/img.jpg"


def groq_reply(content):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def gemini_reply(text):
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


def detection_json(disease="Leaf Rust", confidence=0.92, **extra):
    data = {
        "disease": disease,
        "confidence": confidence,
        "severity": "medium",
        "symptoms": ["Orange pustules on leaves"],
        "treatment": [{"method": "Chemical Treatment", "description": "Spray propiconazole", "priority": "high"}],
        "fertilizers": ["Potassium sulfate"],
        "homeRemedies": ["Neem oil spray"],
        "prevention": ["Use resistant varieties"],
    }
    data.update(extra)
    return json.dumps(data)


class BackendRouter:
    """Routes MockTransport requests to per-host handlers and records every call."""

    def __init__(self, groq=None, gemini=None, huggingface=None):
        self.handlers = {GROQ_HOST: groq, GEMINI_HOST: gemini, HF_HOST: huggingface}
        self.calls = []

    def __call__(self, request):
        host = request.url.host
        self.calls.append(host)
        if host == "x":
            return httpx.Response(200, content=b"not-really-a-jpeg")
        handler = self.handlers.get(host)
        if handler is None:
            return httpx.Response(500, text="no handler")
        return handler(request)

    def transport(self):
        return httpx.MockTransport(self)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        groq_api_key="gsk_test",
        gemini_api_keys=["gemini_test"],
        huggingface_api_key="hf_test",
        gemini_backoff_seconds=0.0,
        provider_timeout_seconds=5.0,
        db_path=str(tmp_path / "analyses.db"),
    )


@pytest.fixture
def store(settings):
    return AnalysisStore(settings.db_path)


@pytest.fixture
def make_service(settings, store):
    """Build a DetectionService whose adapters talk to a BackendRouter."""

    def _make(router):
        selector = ProviderSelector(build_providers(settings, transport=router.transport()))
        pipeline = AnalysisPipeline(store, selector)
        return DetectionService(store, selector, pipeline)

    return _make
