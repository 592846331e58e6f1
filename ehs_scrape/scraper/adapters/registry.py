from __future__ import annotations

from typing import Any, Callable, Mapping, Optional

from .. import sources
from .base import AdapterConfigError, SourceAdapter
from .ea import EaCaseAdapter, EaNoticeAdapter
from .hse import HseCaseAdapter, HseNoticeAdapter

AdapterFactory = Callable[..., SourceAdapter]

ADAPTER_FACTORIES: dict[str, AdapterFactory] = {
    sources.HSE_CASES: HseCaseAdapter,
    sources.HSE_NOTICES: HseNoticeAdapter,
    sources.EA_CASES: EaCaseAdapter,
    sources.EA_NOTICES: EaNoticeAdapter,
}

# Request options each adapter accepts as constructor keywords.
ADAPTER_OPTIONS: dict[str, tuple[str, ...]] = {
    sources.HSE_CASES: ("database",),
    sources.HSE_NOTICES: ("country",),
    sources.EA_CASES: ("action_types",),
    sources.EA_NOTICES: (),
}


def build_adapter(source: str, options: Optional[Mapping[str, Any]] = None) -> SourceAdapter:
    """Instantiate the adapter for ``source`` with the request's options.

    Unknown sources and unsupported options raise :class:`AdapterConfigError`.
    """

    factory = ADAPTER_FACTORIES.get(source)
    if factory is None:
        raise AdapterConfigError(f"No adapter registered for source {source!r}")

    allowed = ADAPTER_OPTIONS.get(source, ())
    kwargs = dict(options or {})
    unsupported = sorted(set(kwargs) - set(allowed))
    if unsupported:
        raise AdapterConfigError(f"Unsupported option(s) for {source}: {unsupported}")
    return factory(**kwargs)


__all__ = ["ADAPTER_FACTORIES", "ADAPTER_OPTIONS", "build_adapter"]
