"""
Provider selection with ordered fallback.

The selector owns the adapter instances; it is built once at startup and
shared by every pipeline run. It never touches the analysis store.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional

from ..errors import AllProvidersFailedError, ProviderError
from ..models import PROVIDER_NAMES, DetectionResult, ImageRef, Location
from .providers import VisionProvider

logger = logging.getLogger(__name__)


class ProviderSelector:
    def __init__(self, providers: Mapping[str, VisionProvider], order: Optional[List[str]] = None):
        self.providers = dict(providers)
        base = order or list(PROVIDER_NAMES)
        self.order = [name for name in base if name in self.providers]

    def provider_order(self, preferred: Optional[str] = None) -> List[str]:
        """Configured provider names with `preferred` moved to the front."""
        names = list(self.order)
        if preferred and preferred in names:
            names.remove(preferred)
            names.insert(0, preferred)
        return names

    def configured(self) -> List[str]:
        return [name for name in self.order if self.providers[name].is_configured()]

    def analyze_with_fallback(
        self,
        image: ImageRef,
        crop_type: Optional[str] = None,
        location: Optional[Location] = None,
        preferred_provider: Optional[str] = "groq",
    ) -> DetectionResult:
        """Try each adapter in order and return the first usable result.

        A call that returns the fallback payload (or an empty disease) counts
        as a failed attempt, same as a raised `ProviderError`.
        """
        attempts: List[Dict[str, Any]] = []
        last_error: Optional[str] = None

        for name in self.provider_order(preferred_provider):
            provider = self.providers[name]
            logger.info("[Selector] trying provider: %s", name)
            try:
                result = provider.analyze(image, crop_type, location)
            except ProviderError as e:
                logger.warning("[Selector] provider %s failed: %s", name, e)
                last_error = str(e)
                attempts.append({"provider": name, "error": last_error, "errorType": type(e).__name__})
                continue

            if result.is_usable:
                logger.info("[Selector] success with provider: %s", name)
                return result.model_copy(update={"provider": name})

            last_error = result.error or f"{name} returned no usable diagnosis"
            logger.warning("[Selector] provider %s returned unusable result: %s", name, last_error)
            attempts.append({"provider": name, "error": last_error, "errorType": "UnusableResult"})

        raise AllProvidersFailedError(last_error, attempts)
