import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List

from ..errors import ModelNotFound, ProviderNotFound
from ..models import Provider
from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedModel:
    """A provider plus the model id to request from it."""

    provider: Provider
    model_id: str


class ProviderRegistry:
    """Resolves ``"provider/model"`` identifiers against configured providers.

    Pure lookup: no network calls and no session state is touched, so a
    failed resolution leaves everything exactly as it was.
    """

    def __init__(self, providers: Iterable[Provider] = ()) -> None:
        self._providers: Dict[str, Provider] = {}
        for provider in providers:
            self.register(provider)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ProviderRegistry":
        settings = settings or get_settings()
        return cls(
            Provider(
                id=cfg.id,
                base_url=cfg.base_url,
                api_key=cfg.api_key,
                models=list(cfg.models),
                extra=dict(cfg.extra),
            )
            for cfg in settings.providers
        )

    def register(self, provider: Provider) -> None:
        if provider.id in self._providers:
            logger.warning("Provider %s registered twice; keeping the latest", provider.id)
        self._providers[provider.id] = provider

    def get(self, provider_id: str) -> Provider | None:
        return self._providers.get(provider_id)

    def provider_ids(self) -> List[str]:
        return list(self._providers)

    def resolve(self, identifier: str) -> ResolvedModel:
        """Split on the first ``/`` and look the provider up by id.

        Args:
            identifier: ``"<provider id>/<model id>"``; the model id may itself
                contain slashes (``"openrouter/openai/gpt-4o"``).

        Returns:
            ResolvedModel: the provider and the model id.

        Raises:
            ProviderNotFound: no provider is configured under that id.
            ModelNotFound: the provider enumerates its models and this one is
                not among them.
        """
        provider_id, sep, model_id = identifier.partition("/")
        provider = self._providers.get(provider_id) if provider_id else None
        if provider is None:
            raise ProviderNotFound(provider_id)
        if not sep or not model_id:
            raise ModelNotFound(provider_id, model_id)
        if provider.models and model_id not in provider.models:
            raise ModelNotFound(provider_id, model_id)
        return ResolvedModel(provider=provider, model_id=model_id)
