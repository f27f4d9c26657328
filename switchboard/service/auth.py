from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode, urlparse

from switchboard.config import Settings
from switchboard.logging import get_logger
from switchboard.service.errors import AuthenticationError, ValidationError
from switchboard.service.tokens import EphemeralTokenStore

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "scope": "read:user user:email",
    },
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "scope": "openid email profile",
    },
    "microsoft": {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "scope": "openid email profile User.Read",
    },
}

logger = get_logger(__name__)


class LoginService:
    """OAuth login handshake guarded by single-use state tokens.

    ``start_oauth`` issues a state token bound to the provider and embeds it
    in the provider's authorization URL; ``verify_oauth_callback`` redeems
    it exactly once, and only for that provider.
    The code-for-token exchange and session creation that follow a
    verified callback belong to the caller.
    """

    def __init__(self, tokens: EphemeralTokenStore, settings: Settings) -> None:
        self.tokens = tokens
        self.settings = settings
        self.logger = logger

    def issue_login_token(self) -> str:
        return self.tokens.issue()

    def consume_login_token(self, token: str) -> bool:
        return self.tokens.consume(token)

    def _get_client_id(self, provider: str) -> Optional[str]:
        if provider == "github":
            return self.settings.oauth_github_client_id
        elif provider == "google":
            return self.settings.oauth_google_client_id
        elif provider == "microsoft":
            return self.settings.oauth_microsoft_client_id
        return None

    def _validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("OAuth redirect URI must be http(s)", reason="invalid_redirect_uri")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError(
                "Insecure redirect URI not allowed outside localhost",
                reason="invalid_redirect_uri",
            )
        if not parsed.netloc:
            raise ValidationError("OAuth redirect URI must include host", reason="invalid_redirect_uri")
        return redirect_uri

    async def start_oauth(self, provider: str, redirect_uri: Optional[str] = None) -> dict:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(
                f"Unsupported OAuth provider: {provider}", reason="unsupported_provider"
            )
        client_id = self._get_client_id(provider)
        if not client_id:
            self.logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(
                f"OAuth provider {provider} is not configured", reason="provider_not_configured"
            )
        callback_uri = redirect_uri or self.settings.oauth_redirect_uri
        if not callback_uri:
            self.logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ValidationError("No OAuth redirect URI configured", reason="invalid_redirect_uri")
        callback_uri = self._validate_redirect_uri(callback_uri)

        state = self.tokens.issue(bound_to=provider)
        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        authorization_url = f"{provider_config['auth_url']}?{urlencode(params)}"
        self.logger.info("oauth_started", provider=provider)
        return {
            "authorization_url": authorization_url,
            "state": state,
            "provider": provider,
        }

    async def verify_oauth_callback(self, provider: str, state: str) -> None:
        """Redeem the callback ``state``; raises unless it is live and unused."""
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(
                f"Unsupported OAuth provider: {provider}", reason="unsupported_provider"
            )
        # A state issued for one provider is spent, not honored, on another
        if not self.tokens.consume(state, bound_to=provider):
            self.logger.warning("oauth_state_rejected", provider=provider)
            raise AuthenticationError(
                "invalid or expired OAuth state", reason="invalid_oauth_state"
            )
        self.logger.info("oauth_state_verified", provider=provider)
