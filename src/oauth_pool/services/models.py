"""Model names each provider can run."""

from oauth_pool.providers import ProviderRegistry
from oauth_pool.rotation.pool import AccountPool


class ModelCatalog:
    """Provider default models merged with per-account overrides."""

    def __init__(self, providers: ProviderRegistry, pool: AccountPool) -> None:
        self.providers = providers
        self.pool = pool

    async def list_models(self, provider: str) -> list[str]:
        spec = self.providers.get(provider)
        models = list(spec.default_models)
        for account in await self.pool.list(provider):
            if account.model_override and account.model_override not in models:
                models.append(account.model_override)
        return models

    async def all_models(self) -> dict[str, list[str]]:
        return {p: await self.list_models(p) for p in self.providers.ids()}
