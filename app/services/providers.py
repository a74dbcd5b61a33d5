"""
Provider registry: provider id -> upstream model, display name, pricing key, backend.
Orchestration only ever sees a ProviderSpec; adding a provider is one CATALOG entry.
"""
from dataclasses import dataclass

from app.config import get_settings
from app.services.errors import UnknownProvider

BACKEND_GATEWAY = "gateway"  # OpenAI-compatible AI gateway
BACKEND_VERTEX = "vertex"  # Gemini on Vertex AI


@dataclass(frozen=True)
class ProviderSpec:
    id: str
    model_id: str
    display_name: str
    pricing_key: str
    backend: str = BACKEND_GATEWAY


CATALOG: dict[str, ProviderSpec] = {
    spec.id: spec
    for spec in (
        ProviderSpec("openai", "openai/gpt-4o", "GPT-4o", "gpt-4o"),
        ProviderSpec(
            "anthropic",
            "anthropic/claude-3-5-sonnet-20241022",
            "Claude 3.5 Sonnet",
            "claude-3-sonnet-20240229",
        ),
        ProviderSpec("xai", "xai/grok-3", "Grok 3", "grok-3"),
        ProviderSpec("google", "gemini-2.0-flash", "Gemini 2.0 Flash", "gemini-2.0-flash", BACKEND_VERTEX),
    )
}


def registered_providers() -> list[ProviderSpec]:
    """Enabled providers in configured order. Ids missing from CATALOG are ignored."""
    return [CATALOG[p] for p in get_settings().enabled_provider_ids if p in CATALOG]


def resolve(provider_id: str | None) -> ProviderSpec:
    key = (provider_id or "").strip().lower()
    for spec in registered_providers():
        if spec.id == key:
            return spec
    raise UnknownProvider(provider_id or "")
