import time
import logging
from typing import Optional
import httpx
import jwt
from datetime import datetime, timedelta, timezone

from .errors import AuthenticationError

logger = logging.getLogger(__name__)


class GitHubAuthenticator:
    """Supplies a token: a personal access token when configured, otherwise a
    GitHub App installation token minted from the app's private key."""

    def __init__(
        self,
        token: Optional[str] = None,
        app_id: Optional[str] = None,
        private_key: Optional[str] = None,
        installation_id: Optional[int] = None,
        owner: Optional[str] = None,
        api_url: str = "https://api.github.com",
    ):
        self.token = token or None
        self.app_id = app_id or None
        self.private_key = private_key or None
        self.installation_id = installation_id
        self.owner = owner
        self.base_url = api_url.rstrip("/")
        self._installation_token: Optional[str] = None
        self._token_expiry: float = 0.0

    @classmethod
    def from_settings(
        cls, settings, owner: Optional[str] = None, installation_id: Optional[int] = None
    ) -> "GitHubAuthenticator":
        if installation_id is None and settings.installation_id:
            installation_id = int(settings.installation_id)
        return cls(
            token=settings.github_token(),
            app_id=settings.app_id,
            private_key=settings.app_private_key,
            installation_id=installation_id,
            owner=owner,
            api_url=settings.github_api_url,
        )

    def validate(self) -> None:
        if self.token:
            return
        if self.app_id and self.private_key:
            return
        raise AuthenticationError(
            "No authentication method available. Provide either a token via GITHUB_TOKEN "
            "or GitHub App credentials via GH_APP_ID and GH_APP_PRIVATE_KEY."
        )

    def get_token(self) -> str:
        if self.token:
            return self.token
        if self.app_id and self.private_key:
            return self._app_token()
        raise AuthenticationError(
            "No valid authentication method provided. Please provide either a token or GitHub App credentials."
        )

    def _app_jwt(self) -> str:
        now = datetime.now(tz=timezone.utc)
        payload = {
            "iat": int(now.timestamp()) - 60,
            "exp": int((now + timedelta(minutes=10)).timestamp()),
            "iss": self.app_id,
        }
        return jwt.encode(payload, self.private_key, algorithm="RS256")

    def _app_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._app_jwt()}",
            "Accept": "application/vnd.github+json",
        }

    def _find_installation(self) -> int:
        if not self.owner:
            raise AuthenticationError("GitHub App installation id is required when the repository owner is unknown")
        url = f"{self.base_url}/app/installations"
        resp = httpx.get(url, headers=self._app_headers(), timeout=30)
        if resp.status_code >= 400:
            raise AuthenticationError(
                f"Failed to authenticate with GitHub App: listing installations returned {resp.status_code}"
            )
        for inst in resp.json():
            login = ((inst.get("account") or {}).get("login") or "").lower()
            if login == self.owner.lower():
                return int(inst["id"])
        raise AuthenticationError(
            f"GitHub App is not installed for {self.owner}. Please install the app or provide the installation ID."
        )

    def _app_token(self) -> str:
        if self._installation_token and time.time() < self._token_expiry - 60:
            return self._installation_token
        if self.installation_id is None:
            self.installation_id = self._find_installation()
        url = f"{self.base_url}/app/installations/{self.installation_id}/access_tokens"
        logger.debug("github.request: method=POST installation=%s phase=token_exchange", self.installation_id)
        resp = httpx.post(url, headers=self._app_headers(), timeout=30)
        if resp.status_code >= 400:
            raise AuthenticationError(
                f"Failed to authenticate with GitHub App: token exchange returned {resp.status_code}"
            )
        data = resp.json()
        self._installation_token = data.get("token")
        expires_at = data.get("expires_at")  # e.g., 2024-01-01T00:00:00Z
        if expires_at:
            dt = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
            self._token_expiry = dt.timestamp()
        else:
            self._token_expiry = time.time() + 3600
        if not self._installation_token:
            raise AuthenticationError("Failed to authenticate with GitHub App: no token in response")
        return self._installation_token
