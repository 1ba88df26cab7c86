"""Authentication manager: registration, password and OAuth sign-in, refresh."""

import asyncio
import uuid
from collections.abc import Awaitable, Mapping
from typing import NoReturn, TypeVar

from subspace.auth.jwt_utils import AccessTokenCodec, TokenPayload
from subspace.auth.oidc import IdentityClaims, IdentityVerifier
from subspace.auth.password import PasswordHasher
from subspace.auth.refresh_tokens import RefreshTokenStore
from subspace.exceptions import (
    ConflictError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    RefreshTokenNotFoundError,
    StorageError,
    SubspaceError,
    UnsupportedProviderError,
    UserNotFoundError,
    ValidationError,
)
from subspace.models import AuthResult, Clock, User, utcnow
from subspace.observability import emit_counter, get_logger
from subspace.protocols import UserRepository
from subspace.utils.crypto import generate_random_token
from subspace.utils.validation import (
    MIN_PASSWORD_LENGTH,
    validate_email,
    validate_name,
    validate_password,
)

logger = get_logger(__name__)

T = TypeVar("T")


class AuthManager:
    """Orchestrates every way a client obtains a token pair.

    Supports three flows:
    - password: register and login with email and password
    - oauth: sign in with an identity token from an external provider
    - refresh: rotate a refresh token into a new pair
    """

    def __init__(
        self,
        users: UserRepository,
        hasher: PasswordHasher,
        access_tokens: AccessTokenCodec,
        refresh_tokens: RefreshTokenStore,
        verifiers: Mapping[str, IdentityVerifier] | None = None,
        storage_timeout: float = 3.0,
        min_password_length: int = MIN_PASSWORD_LENGTH,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize authentication manager.

        Args:
            users: User storage
            hasher: Password hasher
            access_tokens: Access token codec
            refresh_tokens: Refresh token store
            verifiers: Identity verifiers keyed by provider name
            storage_timeout: Seconds allowed for each storage call
            min_password_length: Minimum accepted password length
            clock: Source of the current time
        """
        self.users = users
        self.hasher = hasher
        self.access_tokens = access_tokens
        self.refresh_tokens = refresh_tokens
        self.verifiers = dict(verifiers or {})
        self.storage_timeout = storage_timeout
        self.min_password_length = min_password_length
        self._clock = clock
        self._dummy_hash: str | None = None

    async def _storage(self, operation: Awaitable[T]) -> T:
        """Run a storage call under the storage timeout.

        Domain errors pass through; anything else becomes StorageError.
        """
        try:
            return await asyncio.wait_for(operation, self.storage_timeout)
        except SubspaceError:
            raise
        except asyncio.TimeoutError as e:
            logger.error("Storage operation timed out", context={"timeout": self.storage_timeout})
            raise StorageError("Storage operation timed out") from e
        except Exception as e:
            logger.error("Storage operation failed", error=e)
            raise StorageError() from e

    async def _find_by_email(self, email: str) -> User | None:
        try:
            return await self._storage(self.users.get_by_email(email))
        except UserNotFoundError:
            return None

    async def _mint(self, user: User) -> AuthResult:
        access_token = self.access_tokens.issue(user.id, user.email)
        record = await self._storage(self.refresh_tokens.issue(user.id))
        return AuthResult(access_token=access_token, refresh_token=record.token, user=user)

    async def _reject_login(self, password: str, reason: str) -> NoReturn:
        """Burn one verification so failures take as long as a real check."""
        if self._dummy_hash is None:
            self._dummy_hash = await self.hasher.hash(generate_random_token())
        await self.hasher.verify(self._dummy_hash, password)
        emit_counter("auth.login.failed", {"reason": reason})
        raise InvalidCredentialsError()

    async def register(self, name: str, email: str, password: str) -> AuthResult:
        """Register a new user with password authentication.

        Args:
            name: Display name
            email: Email address, stored exactly as given
            password: Plaintext password

        Returns:
            Token pair and the created user

        Raises:
            ValidationError: If any input is invalid
            ConflictError: If the email is already registered
        """
        name = validate_name(name)
        email = validate_email(email)
        validate_password(password, self.min_password_length)

        if await self._find_by_email(email) is not None:
            raise ConflictError()

        now = self._clock()
        user = User(
            id=str(uuid.uuid4()),
            name=name,
            email=email,
            password_hash=await self.hasher.hash(password),
            created_at=now,
            updated_at=now,
        )
        # The unique constraint still decides a concurrent registration race
        user = await self._storage(self.users.create(user))

        emit_counter("auth.register.succeeded")
        logger.info("User registered", context={"user_id": user.id})
        return await self._mint(user)

    async def login(self, email: str, password: str) -> AuthResult:
        """Login with email and password.

        Unknown emails, OAuth-only accounts and wrong passwords are
        indistinguishable to the caller.

        Raises:
            InvalidCredentialsError: If credentials are invalid
        """
        if not email or not password:
            raise ValidationError("email and password are required")

        user = await self._find_by_email(email)
        if user is None:
            await self._reject_login(password, "unknown_email")

        if not user.password_hash:
            await self._reject_login(password, "no_password")

        if not await self.hasher.verify(user.password_hash, password):
            emit_counter("auth.login.failed", {"reason": "wrong_password"})
            raise InvalidCredentialsError()

        if self.hasher.needs_rehash(user.password_hash):
            user.password_hash = await self.hasher.hash(password)
            user.updated_at = self._clock()
            user = await self._storage(self.users.update(user))
            logger.info("Password rehashed", context={"user_id": user.id})

        emit_counter("auth.login.succeeded", {"method": "password"})
        return await self._mint(user)

    async def oauth_sign_in(
        self,
        provider: str,
        identity_token: str,
        audience: str | None = None,
        email: str | None = None,
        full_name: str | None = None,
    ) -> AuthResult:
        """Sign in with an external identity token, creating the user if needed.

        Args:
            provider: Provider name ("apple", "google")
            identity_token: Token issued by the provider
            audience: Expected audience; defaults to the provider's client id
            email: Client-supplied email, used only if the token has none
            full_name: Client-supplied name for first sign-in

        Raises:
            UnsupportedProviderError: If no verifier handles the provider
            ExternalVerificationError: If the token does not verify
            ValidationError: If no email can be determined
        """
        verifier = self.verifiers.get(provider)
        if verifier is None:
            raise UnsupportedProviderError(f"Unsupported identity provider: {provider}")
        if not identity_token:
            raise ValidationError("identity token is required")

        try:
            claims = await verifier.verify(identity_token, audience)
        except SubspaceError as e:
            emit_counter("auth.oauth.failed", {"provider": provider, "error": e.kind.value})
            raise

        resolved_email = validate_email(claims.email or email)

        user = await self._find_by_email(resolved_email)
        if user is None:
            user = await self._create_oauth_user(claims, resolved_email, full_name)

        emit_counter("auth.login.succeeded", {"method": provider})
        return await self._mint(user)

    async def _create_oauth_user(
        self,
        claims: IdentityClaims,
        email: str,
        full_name: str | None,
    ) -> User:
        name = (claims.name or full_name or "").strip() or email
        now = self._clock()
        user = User(
            id=str(uuid.uuid4()),
            name=name[:255],
            email=email,
            avatar_url=claims.picture,
            created_at=now,
            updated_at=now,
        )
        try:
            user = await self._storage(self.users.create(user))
        except ConflictError:
            # Lost a first-sign-in race; the winner's row is the account
            return await self._storage(self.users.get_by_email(email))

        logger.info("User created from identity provider", context={"user_id": user.id, "provider": claims.provider})
        return user

    async def refresh(self, refresh_token: str) -> AuthResult:
        """Rotate a refresh token into a new token pair.

        Expiry and revocation are checked first, then the owner is resolved
        before the token is consumed, so a missing user does not burn it.
        Once consumed, the old token stays revoked even if minting the new
        pair fails.

        Raises:
            InvalidRefreshTokenError: Blank or unknown token
            RefreshTokenExpiredError: Token is past expiry
            RefreshTokenRevokedError: Token was revoked or already rotated
            UserNotFoundError: Token owner no longer exists
        """
        if not refresh_token or not refresh_token.strip():
            raise InvalidRefreshTokenError()

        try:
            record = await self._storage(self.refresh_tokens.lookup(refresh_token))
        except RefreshTokenNotFoundError as e:
            raise InvalidRefreshTokenError() from e

        self.refresh_tokens.check(record)
        user = await self._storage(self.users.get_by_id(record.user_id))
        await self._storage(self.refresh_tokens.consume(refresh_token))

        emit_counter("auth.refresh.rotated")
        return await self._mint(user)

    def authenticate(self, access_token: str) -> TokenPayload:
        """Validate an access token."""
        return self.access_tokens.validate(access_token)

    async def current_user(self, payload: TokenPayload) -> User:
        """Load the user an access token was issued to."""
        return await self._storage(self.users.get_by_id(payload.user_id))

    async def logout(self, refresh_token: str) -> bool:
        """Revoke one refresh token.

        Raises:
            InvalidRefreshTokenError: Blank or unknown token
        """
        if not refresh_token:
            raise InvalidRefreshTokenError()
        try:
            return await self._storage(self.refresh_tokens.revoke(refresh_token))
        except RefreshTokenNotFoundError as e:
            raise InvalidRefreshTokenError() from e

    async def logout_all(self, user_id: str) -> int:
        """Revoke all refresh tokens of a user.

        Access tokens already issued stay valid until they expire.
        """
        revoked = await self._storage(self.refresh_tokens.revoke_all(user_id))
        logger.info("Revoked all refresh tokens", context={"user_id": user_id, "revoked": revoked})
        return revoked

    async def sweep_expired_tokens(self) -> int:
        return await self._storage(self.refresh_tokens.sweep_expired())
