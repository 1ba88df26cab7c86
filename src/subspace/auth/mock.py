"""Sentinel-token verifier for local development and tests.

Only wired in when ``auth.allow_mock_tokens`` is set, which configuration
validation refuses in production.
"""

from collections.abc import Iterable

from subspace.auth.oidc import IdentityClaims, IdentityVerifier
from subspace.observability import get_logger

logger = get_logger(__name__)

DEFAULT_MOCK_TOKENS = ("mock-token", "mock-id-token")


class MockIdentityVerifier:
    """Accepts sentinel tokens without verification, delegates the rest.

    Sentinel claims carry no email, so sign-in falls back to the email the
    client supplied.
    """

    def __init__(
        self,
        delegate: IdentityVerifier,
        sentinel_tokens: Iterable[str] = DEFAULT_MOCK_TOKENS,
    ) -> None:
        self.delegate = delegate
        self.provider = delegate.provider
        self.sentinel_tokens = frozenset(sentinel_tokens)

    async def verify(self, identity_token: str, audience: str | None = None) -> IdentityClaims:
        if identity_token in self.sentinel_tokens:
            logger.warning("Accepted mock identity token", context={"provider": self.provider})
            return IdentityClaims(
                subject=f"mock-{self.provider}-user",
                provider=self.provider,
            )
        return await self.delegate.verify(identity_token, audience)
