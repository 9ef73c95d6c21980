from __future__ import annotations

import logging
from typing import Mapping

from taxrouter.adapters.base import ClientAdapter
from taxrouter.adapters.mywelltax.adapter import MyWellTaxAdapter
from taxrouter.core.errors import AdapterUnavailable
from taxrouter.services.crypto.secret_box import SecretBox


logger = logging.getLogger(__name__)

DEFAULT_ADAPTER_KIND = "mywelltax"


class AdapterRegistry:
    """Map adapter kind strings to adapter instances; unknown kinds use the default."""

    def __init__(self, adapters: Mapping[str, ClientAdapter], *, default_kind: str | None = DEFAULT_ADAPTER_KIND) -> None:
        self._adapters = dict(adapters)
        self._default_kind = default_kind

    @property
    def kinds(self) -> tuple[str, ...]:
        return tuple(sorted(self._adapters))

    def for_kind(self, kind: str | None) -> ClientAdapter:
        adapter = self._adapters.get(kind or "")
        if adapter is not None:
            return adapter
        default = self._adapters.get(self._default_kind or "")
        if default is None:
            raise AdapterUnavailable(f"no adapter registered for kind: {kind}")
        logger.warning("adapter_kind_fallback requested=%s using=%s", kind, self._default_kind)
        return default


def build_adapter_registry(secret_box: SecretBox) -> AdapterRegistry:
    return AdapterRegistry({MyWellTaxAdapter.adapter_type: MyWellTaxAdapter(secret_box)})
