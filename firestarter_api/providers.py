"""LLM provider registry and selection.

A provider is chosen either explicitly, through one of the ``X-Use-*`` request
headers, or implicitly from the configured priority list: the first provider
whose credential is present wins.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal

import structlog

from firestarter_api.config import Settings

logger = structlog.get_logger()

WireFormat = Literal["openai", "anthropic"]


class ProviderError(Exception):
    """Base exception for provider selection errors."""

    pass


class NoProviderConfigured(ProviderError):
    """Raised when no provider in the priority list has a credential."""

    pass


class ProviderKeyMissing(ProviderError):
    """Raised when a provider was requested explicitly but has no credential."""

    def __init__(self, provider: "ProviderSpec"):
        super().__init__(f"{provider.env_var} not set.")
        self.provider = provider


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of an LLM backend."""

    name: str
    label: str
    env_var: str
    base_url: str
    wire_format: WireFormat = "openai"

    def api_key(self, settings: Settings) -> str:
        return getattr(settings, self.env_var.lower(), "")

    def default_model(self, settings: Settings) -> str:
        return getattr(settings, f"{self.name}_model")


OPENAI = ProviderSpec(
    name="openai",
    label="OpenAI",
    env_var="OPENAI_API_KEY",
    base_url="https://api.openai.com/v1",
)
ANTHROPIC = ProviderSpec(
    name="anthropic",
    label="Anthropic",
    env_var="ANTHROPIC_API_KEY",
    base_url="https://api.anthropic.com/v1",
    wire_format="anthropic",
)
GOOGLE = ProviderSpec(
    name="google",
    label="Google Gemini",
    env_var="GOOGLE_AI_STUDIO_API_KEY",
    base_url="https://generativelanguage.googleapis.com/v1beta/openai",
)
GROQ = ProviderSpec(
    name="groq",
    label="Groq",
    env_var="GROQ_API_KEY",
    base_url="https://api.groq.com/openai/v1",
)

PROVIDERS: dict[str, ProviderSpec] = {p.name: p for p in (OPENAI, ANTHROPIC, GOOGLE, GROQ)}

# Header flags, checked in this order
PROVIDER_HEADERS: list[tuple[str, ProviderSpec]] = [
    ("x-use-google-ai", GOOGLE),
    ("x-use-groq", GROQ),
    ("x-use-openai", OPENAI),
    ("x-use-anthropic", ANTHROPIC),
]


@dataclass(frozen=True)
class ProviderSelection:
    """A provider together with the credential and model to use for it."""

    provider: ProviderSpec
    api_key: str
    model: str

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


def _priority(settings: Settings) -> list[ProviderSpec]:
    providers = []
    for name in settings.provider_priority:
        provider = PROVIDERS.get(name)
        if provider is None:
            logger.warning("Unknown provider in priority list", provider=name)
            continue
        providers.append(provider)
    return providers


def configured_providers(settings: Settings) -> list[str]:
    """Names of providers that have a credential, in priority order."""
    return [p.name for p in _priority(settings) if p.api_key(settings)]


def select_provider(settings: Settings) -> ProviderSelection:
    """Pick the first provider from the priority list that has a credential.

    Raises:
        NoProviderConfigured: If no provider has a credential and mock mode is off.
    """
    priority = _priority(settings)
    for provider in priority:
        api_key = provider.api_key(settings)
        if api_key:
            return ProviderSelection(provider, api_key, provider.default_model(settings))

    if settings.mock_llm and priority:
        # Unconfigured selection; the client serves canned responses
        provider = priority[0]
        return ProviderSelection(provider, "", provider.default_model(settings))

    env_vars = ", ".join(p.env_var for p in PROVIDERS.values())
    raise NoProviderConfigured(f"No AI provider configured. Please set {env_vars}")


def provider_from_headers(headers: Mapping[str, str]) -> ProviderSpec | None:
    """Return the provider forced by an ``X-Use-*: true`` header, if any."""
    for header, provider in PROVIDER_HEADERS:
        if (headers.get(header) or "").lower() == "true":
            return provider
    return None


def resolve_forced_provider(
    provider: ProviderSpec, settings: Settings, model: str | None = None
) -> ProviderSelection:
    """Build a selection for an explicitly requested provider.

    Raises:
        ProviderKeyMissing: If the provider has no credential and mock mode is off.
    """
    api_key = provider.api_key(settings)
    if not api_key and not settings.mock_llm:
        raise ProviderKeyMissing(provider)
    return ProviderSelection(provider, api_key, model or provider.default_model(settings))
