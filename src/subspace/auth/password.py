"""Password hashing with argon2id.

Hashing is deliberately slow, so it runs on a dedicated thread pool to
keep the event loop responsive.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import argon2
from argon2.exceptions import HashingError as Argon2HashingError
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from subspace.exceptions import HashingError


class PasswordHasher:
    """Salted argon2id hashing executed off the event loop."""

    def __init__(
        self,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
        workers: int = 4,
    ) -> None:
        """Initialize the hasher.

        Args:
            time_cost: argon2 iterations
            memory_cost: argon2 memory in KiB (65536 = 64 MB)
            parallelism: argon2 lanes
            workers: Size of the hashing thread pool
        """
        self._hasher = argon2.PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=32,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix="subspace-hash",
        )

    def _hash(self, password: str) -> str:
        try:
            return self._hasher.hash(password)
        except Argon2HashingError as e:
            raise HashingError() from e

    def _verify(self, password_hash: str, candidate: str) -> bool:
        try:
            return self._hasher.verify(password_hash, candidate)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    async def hash(self, password: str) -> str:
        """Hash a password.

        Args:
            password: The plaintext password

        Returns:
            The encoded hash (includes salt and parameters)

        Raises:
            HashingError: If the underlying primitive fails
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._hash, password)

    async def verify(self, password_hash: str, candidate: str) -> bool:
        """Check a candidate password against a stored hash.

        A mismatch or a malformed hash yields False; comparison happens
        inside argon2.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._verify, password_hash, candidate)

    def needs_rehash(self, password_hash: str) -> bool:
        """True if the hash was produced with different parameters."""
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError:
            return False

    def close(self) -> None:
        """Shut down the hashing thread pool."""
        self._executor.shutdown(wait=False)
