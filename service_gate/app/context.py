"""
Request-scoped pipeline context and the trust entries placed on it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .results import ValidationOk


class TrustEntry(BaseModel):
    """One caller-owned whitelist record of a trusted token issuer."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    issuer: str
    key_set_location: str = Field(alias="jku")
    tenant_id: str = ""
    route_tenant: str = ""
    enabled: bool = True


@dataclass
class PipelineContext:
    """State for one in-flight request.

    Upstream stages fill ``authorization``, ``whitelist`` and ``audience``;
    validation gates add their results under ``results``.
    """

    authorization: Optional[str] = None
    whitelist: Tuple[TrustEntry, ...] = ()
    audience: Optional[str] = None
    results: Dict[str, ValidationOk] = field(default_factory=dict)
    extras: Dict[str, Any] = field(default_factory=dict)

    def set_whitelist(self, entries: Iterable[Any]) -> None:
        self.whitelist = tuple(
            entry if isinstance(entry, TrustEntry) else TrustEntry.model_validate(entry)
            for entry in entries
        )

    def set_result(self, name: str, result: ValidationOk) -> None:
        self.results[name] = result

    def get_result(self, name: str) -> Optional[ValidationOk]:
        return self.results.get(name)

    def trusted_entry(self) -> Optional[TrustEntry]:
        """Whitelist item matched by the most recent trust check, if one ran."""
        for result in reversed(list(self.results.values())):
            entry = result.payload.get("whitelist_item")
            if isinstance(entry, TrustEntry):
                return entry
        return None
