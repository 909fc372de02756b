from __future__ import annotations

import importlib
from collections.abc import Iterable

from ingest.sources.contract import SourceContractError, SourceModule, assert_source_module_contract


class UnknownSourceError(KeyError):
    """Raised when a source key is not registered."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown source"


class SourceRegistry:
    """Explicit set of source modules available to a process.

    Modules are contract-checked when registered, so a malformed plugin fails
    at startup rather than mid-run.
    """

    def __init__(self, sources: Iterable[SourceModule] = ()) -> None:
        self._sources: dict[str, SourceModule] = {}
        for source in sources:
            self.register(source)

    def register(self, source: SourceModule) -> None:
        assert_source_module_contract(source)
        if source.key in self._sources:
            raise SourceContractError(f'source "{source.key}" is already registered')
        self._sources[source.key] = source

    def list_sources(self) -> list[SourceModule]:
        return list(self._sources.values())

    def keys(self) -> list[str]:
        return list(self._sources)

    def get(self, key: str) -> SourceModule:
        source = self._sources.get(key)
        if source is None:
            supported = ", ".join(self._sources) or "(none)"
            raise UnknownSourceError(f'Unknown source "{key}". Supported sources: {supported}')
        return source

    def __contains__(self, key: object) -> bool:
        return key in self._sources

    def __len__(self) -> int:
        return len(self._sources)


def load_registry(paths: Iterable[str]) -> SourceRegistry:
    """Build a registry from ``package.module:attribute`` references.

    The attribute may be a source module instance or a zero-argument factory
    returning one.
    """
    registry = SourceRegistry()
    for path in paths:
        module_name, separator, attribute = path.partition(":")
        if not separator or not module_name or not attribute:
            raise SourceContractError(f"invalid source module reference {path!r}; expected 'module:attribute'")
        target = getattr(importlib.import_module(module_name), attribute)
        source = target() if isinstance(target, type) or not hasattr(target, "key") else target
        registry.register(source)
    return registry
