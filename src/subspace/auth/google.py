"""Google ID token verification through the tokeninfo endpoint."""

import httpx

from subspace.auth.oidc import IdentityClaims, parse_email_verified
from subspace.exceptions import (
    EmailNotVerifiedError,
    InvalidAudienceError,
    ProviderVerificationError,
)
from subspace.observability import emit_counter, get_logger

logger = get_logger(__name__)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"


class GoogleIdentityVerifier:
    """Delegates ID token validation to Google's tokeninfo endpoint."""

    provider = "google"

    def __init__(
        self,
        tokeninfo_url: str = GOOGLE_TOKENINFO_URL,
        client_id: str | None = None,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the verifier.

        Args:
            tokeninfo_url: Introspection endpoint
            client_id: Expected audience; the check is skipped when unset and
                no audience is passed to ``verify``
            timeout: Request timeout in seconds
            http_client: Shared client; a short-lived one is used if omitted
        """
        self.tokeninfo_url = tokeninfo_url
        self.client_id = client_id
        self.timeout = timeout
        self._http = http_client

    async def _fetch(self, id_token: str) -> httpx.Response:
        params = {"id_token": id_token}
        if self._http is not None:
            return await self._http.get(self.tokeninfo_url, params=params, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.get(self.tokeninfo_url, params=params, timeout=self.timeout)

    async def verify(self, identity_token: str, audience: str | None = None) -> IdentityClaims:
        """Verify a Google ID token.

        Raises:
            ProviderVerificationError: Transport failure, non-200 or bad body
            EmailNotVerifiedError: Google reports the email as unverified
            InvalidAudienceError: ``aud`` does not match the expected client
        """
        try:
            response = await self._fetch(identity_token)
        except httpx.HTTPError as e:
            emit_counter("auth.google.tokeninfo_failed")
            logger.warning("Google tokeninfo request failed", error=e)
            raise ProviderVerificationError("Failed to verify token with Google") from e

        if response.status_code != 200:
            raise ProviderVerificationError("Google rejected the token")

        try:
            info = response.json()
        except ValueError as e:
            raise ProviderVerificationError("Malformed tokeninfo response") from e
        if not isinstance(info, dict) or not info.get("sub"):
            raise ProviderVerificationError("Malformed tokeninfo response")

        if not parse_email_verified(info.get("email_verified")):
            raise EmailNotVerifiedError()

        expected_audience = audience or self.client_id
        if expected_audience and info.get("aud") != expected_audience:
            raise InvalidAudienceError()

        return IdentityClaims(
            subject=info["sub"],
            provider=self.provider,
            email=info.get("email") or None,
            email_verified=True,
            name=info.get("name") or None,
            picture=info.get("picture") or None,
            raw=info,
        )
