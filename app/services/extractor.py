"""Extraction black box: document in, structured payload dict out.

To plug in an extractor:
1. Subclass DocumentExtractor and implement extract().
2. Either call register_extractor("name", factory) and set EXTRACTOR_FACTORY=name,
   or point EXTRACTOR_FACTORY at a zero-argument callable as "package.module:callable".

The returned dict must validate as ``ExtractedPayload`` (therapy, revenue,
approvals, confidence, sources); the worker rejects anything else.
"""
from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)

# Registry: extractor name -> zero-argument factory
_EXTRACTOR_REGISTRY: Dict[str, Callable[[], "DocumentExtractor"]] = {}


class DocumentExtractor(ABC):
    """Turns one stored document into an extraction payload."""

    @abstractmethod
    async def extract(self, document_path: str) -> Dict[str, Any]:
        """Return the payload dict for the document at *document_path* (opaque store path)."""


def register_extractor(name: str, factory: Callable[[], DocumentExtractor]) -> None:
    name = (name or "").lower().strip()
    if not name:
        raise ValueError("Extractor name must be non-empty")
    _EXTRACTOR_REGISTRY[name] = factory


def list_extractors() -> list[str]:
    return sorted(_EXTRACTOR_REGISTRY.keys())


def _import_factory(target: str) -> Callable[[], DocumentExtractor]:
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Extractor factory must look like 'package.module:callable', got {target!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise ValueError(f"{module_name} has no attribute {attr!r}") from exc


def get_extractor(factory: str | None) -> DocumentExtractor:
    """Resolve a registered name or a dotted ``module:callable`` into an extractor instance."""
    if not factory:
        raise ValueError(
            "No extractor configured. Set EXTRACTOR_FACTORY to a registered name "
            f"({list_extractors()}) or 'package.module:callable'."
        )
    key = factory.lower().strip()
    builder = _EXTRACTOR_REGISTRY.get(key) or (_import_factory(factory) if ":" in factory else None)
    if builder is None:
        raise ValueError(f"Unknown extractor: {factory}. Registered: {list_extractors()}")
    extractor = builder()
    if not isinstance(extractor, DocumentExtractor):
        raise ValueError(f"{factory} did not return a DocumentExtractor (got {type(extractor).__name__})")
    logger.info("Using extractor %s (%s)", factory, type(extractor).__name__)
    return extractor
