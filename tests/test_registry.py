import pytest

from ingest.sources.contract import SourceContractError
from ingest.sources.registry import SourceRegistry, UnknownSourceError, load_registry
from tests.fakes import FakeSource


def test_registry_lists_sources_in_registration_order() -> None:
    registry = SourceRegistry([FakeSource("beta"), FakeSource("alpha")])
    assert registry.keys() == ["beta", "alpha"]
    assert "alpha" in registry
    assert len(registry) == 2
    assert registry.get("alpha").key == "alpha"


def test_registry_rejects_duplicate_keys() -> None:
    with pytest.raises(SourceContractError, match="already registered"):
        SourceRegistry([FakeSource("alpha"), FakeSource("alpha")])


def test_unknown_source_names_supported_keys() -> None:
    registry = SourceRegistry([FakeSource("alpha")])
    with pytest.raises(UnknownSourceError) as excinfo:
        registry.get("missing")
    assert str(excinfo.value) == 'Unknown source "missing". Supported sources: alpha'


def test_load_registry_imports_module_references() -> None:
    registry = load_registry(["tests.fakes:FakeSource"])
    assert registry.keys() == ["fake_source"]


def test_load_registry_rejects_malformed_reference() -> None:
    with pytest.raises(SourceContractError, match="expected 'module:attribute'"):
        load_registry(["tests.fakes"])
