from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Literal

from esp_integration.domain.errors import CapabilityUnsupported


AuthMode = Literal["oauth", "api_key", "both"]
CapabilityName = Literal[
    "contacts",
    "campaigns",
    "workflows",
    "templates",
    "media",
    "custom_values",
    "account_details_sync",
    "webhook",
    "validation",
]


@dataclass(frozen=True)
class ProviderCapabilities:
    auth: AuthMode
    contacts: bool = False
    campaigns: bool = False
    workflows: bool = False
    templates: bool = False
    media: bool = False
    custom_values: bool = False
    account_details_sync: bool = False
    webhook: bool = False
    validation: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


CAPABILITY_NAMES: tuple[str, ...] = tuple(f.name for f in fields(ProviderCapabilities) if f.name != "auth")


def has_capability(adapter: Any, name: str) -> bool:
    """True only when the flag is set and the sub-module is actually present."""
    if name not in CAPABILITY_NAMES:
        return False
    return bool(getattr(adapter.capabilities, name, False)) and getattr(adapter, name, None) is not None


def require_capability(adapter: Any, name: str) -> Any:
    if not has_capability(adapter, name):
        raise CapabilityUnsupported(adapter.provider, name)
    return getattr(adapter, name)


def capability_violations(adapter: Any) -> list[str]:
    violations: list[str] = []
    for name in CAPABILITY_NAMES:
        flag = bool(getattr(adapter.capabilities, name, False))
        present = getattr(adapter, name, None) is not None
        if flag != present:
            violations.append(f"{name}: flag={flag} implemented={present}")
    wants_oauth = adapter.capabilities.auth in ("oauth", "both")
    has_oauth = getattr(adapter, "oauth", None) is not None
    if wants_oauth != has_oauth:
        violations.append(f"oauth: auth={adapter.capabilities.auth} implemented={has_oauth}")
    if adapter.webhook_families and getattr(adapter, "webhook", None) is None:
        violations.append("webhook_families declared without a webhook sub-module")
    return violations
