"""Registry of the OAuth providers the pool knows how to talk to."""

from dataclasses import dataclass, field, replace
from pathlib import Path

from oauth_pool.config.oauth import ProviderCredentialSettings
from oauth_pool.exceptions import ProviderNotConfiguredError, UnsupportedProviderError
from oauth_pool.oauth import constants as c


GITHUB_COPILOT = "github-copilot"
ANTIGRAVITY = "antigravity"


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of one provider's grants and endpoints."""

    id: str
    display_name: str
    supports_device_code: bool = False
    supports_web_redirect: bool = False
    supports_file_detection: bool = False
    token_url: str = ""
    device_code_url: str | None = None
    authorize_url: str | None = None
    userinfo_url: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scopes: list[str] = field(default_factory=list)
    use_pkce: bool = False
    extra_authorize_params: dict[str, str] = field(default_factory=dict)
    default_models: list[str] = field(default_factory=list)
    detection_paths: list[str] = field(default_factory=list)

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)

    def detection_files(self, home: Path | None = None) -> list[Path]:
        base = home or Path.home()
        return [base / p for p in self.detection_paths]

    def require_client_id(self) -> str:
        if not self.client_id:
            raise ProviderNotConfiguredError(self.id, "client_id")
        return self.client_id


BUILTIN_PROVIDERS: dict[str, ProviderSpec] = {
    GITHUB_COPILOT: ProviderSpec(
        id=GITHUB_COPILOT,
        display_name="GitHub Copilot",
        supports_device_code=True,
        supports_file_detection=True,
        token_url=c.GITHUB_TOKEN_URL,
        device_code_url=c.GITHUB_DEVICE_CODE_URL,
        userinfo_url=c.GITHUB_USERINFO_URL,
        client_id=c.GITHUB_CLIENT_ID,
        scopes=c.GITHUB_SCOPES,
        default_models=["github-copilot/claude-sonnet-4.6"],
        detection_paths=[
            ".config/github-copilot/hosts.json",
            ".config/github-copilot/apps.json",
        ],
    ),
    ANTIGRAVITY: ProviderSpec(
        id=ANTIGRAVITY,
        display_name="Antigravity",
        supports_web_redirect=True,
        supports_file_detection=True,
        token_url=c.GOOGLE_TOKEN_URL,
        authorize_url=c.GOOGLE_AUTHORIZE_URL,
        userinfo_url=c.GOOGLE_USERINFO_URL,
        scopes=c.GOOGLE_SCOPES,
        use_pkce=True,
        extra_authorize_params={"access_type": "offline", "prompt": "consent"},
        default_models=["google/antigravity-gemini-3-pro"],
        detection_paths=[".gemini/oauth_creds.json"],
    ),
}


class ProviderRegistry:
    """Looks up provider specs with client overrides from settings applied."""

    def __init__(
        self,
        credentials: ProviderCredentialSettings | None = None,
        providers: dict[str, ProviderSpec] | None = None,
    ) -> None:
        credentials = credentials or ProviderCredentialSettings()
        specs = dict(providers if providers is not None else BUILTIN_PROVIDERS)

        if GITHUB_COPILOT in specs and credentials.github_copilot_client_id:
            specs[GITHUB_COPILOT] = replace(
                specs[GITHUB_COPILOT], client_id=credentials.github_copilot_client_id
            )
        if ANTIGRAVITY in specs:
            spec = specs[ANTIGRAVITY]
            specs[ANTIGRAVITY] = replace(
                spec,
                client_id=credentials.antigravity_client_id or spec.client_id,
                client_secret=credentials.antigravity_client_secret
                or spec.client_secret,
            )
        self._specs = specs

    def get(self, provider: str) -> ProviderSpec:
        """Return the spec for ``provider`` or raise UnsupportedProviderError."""
        try:
            return self._specs[provider]
        except KeyError:
            raise UnsupportedProviderError(provider) from None

    def require_device(self, provider: str) -> ProviderSpec:
        spec = self.get(provider)
        if not spec.supports_device_code or not spec.device_code_url:
            raise UnsupportedProviderError(provider, grant="device_code")
        return spec

    def require_redirect(self, provider: str) -> ProviderSpec:
        spec = self.get(provider)
        if not spec.supports_web_redirect or not spec.authorize_url:
            raise UnsupportedProviderError(provider, grant="authorization_code")
        return spec

    def ids(self) -> list[str]:
        return list(self._specs)

    def __iter__(self):
        return iter(self._specs.values())

    def __contains__(self, provider: object) -> bool:
        return provider in self._specs
