"""Unit tests for app.services.extractor (registry + dotted factory resolution)."""
from __future__ import annotations

import sys
import types

import pytest

from app.services.extractor import DocumentExtractor, get_extractor, list_extractors, register_extractor


class StaticExtractor(DocumentExtractor):
    async def extract(self, document_path: str):
        return {"therapy": [], "revenue": [], "approvals": []}


def test_registered_name_resolves():
    register_extractor("Static-Test", StaticExtractor)
    assert "static-test" in list_extractors()
    assert isinstance(get_extractor("static-test"), StaticExtractor)


def test_dotted_factory_resolves(monkeypatch):
    module = types.ModuleType("fake_extractors")
    module.build = StaticExtractor
    monkeypatch.setitem(sys.modules, "fake_extractors", module)

    assert isinstance(get_extractor("fake_extractors:build"), StaticExtractor)


def test_missing_configuration_is_an_error():
    with pytest.raises(ValueError, match="EXTRACTOR_FACTORY"):
        get_extractor(None)


def test_unknown_name_is_an_error():
    with pytest.raises(ValueError, match="Unknown extractor"):
        get_extractor("does-not-exist")


def test_factory_must_return_extractor(monkeypatch):
    module = types.ModuleType("fake_bad_extractors")
    module.build = lambda: object()
    monkeypatch.setitem(sys.modules, "fake_bad_extractors", module)

    with pytest.raises(ValueError, match="did not return a DocumentExtractor"):
        get_extractor("fake_bad_extractors:build")


def test_register_requires_name():
    with pytest.raises(ValueError):
        register_extractor("  ", StaticExtractor)
