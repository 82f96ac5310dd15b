"""
Backing store access used around workload iterations.

The engine only calls ``cleanup(identity)`` after each iteration and
``purge()`` before the first and after the last phase. Workloads may use
``get_verification_token`` to finish sign-up flows.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

from surge.errors import DataStoreError

logger = logging.getLogger("surge.datastore")

DEFAULT_TEST_USER_PATTERN = r"^test\+loadtest\.u.*@yopmail\.com$"
VERIFICATION_PREFIX = "email-verification:"


class DataStore(ABC):
    """Keyed removal of the data one iteration created."""

    @abstractmethod
    async def cleanup(self, identity: str) -> None:
        """Remove everything created under ``identity``."""

    async def purge(self) -> int:
        """Remove all load-test data. Returns the number of identities removed."""
        return 0

    async def get_verification_token(self, identity: str) -> str | None:
        """Look up a pending email verification code for ``identity``."""
        return None

    async def close(self) -> None:
        """Release connections."""


class NullDataStore(DataStore):
    """Store used when cleanup is disabled."""

    async def cleanup(self, identity: str) -> None:
        logger.debug(f"Cleanup skipped for {identity}")


class MongoDataStore(DataStore):
    """
    MongoDB-backed cleanup of load-test users and what they created.

    Identities are user emails. Users own documents in ``forms``,
    ``organizations`` and ``apps`` through a ``creatorId`` field.
    """

    OWNED_COLLECTIONS = ("forms", "organizations", "apps")

    def __init__(
        self,
        connection_string: str,
        database_name: str,
        *,
        user_pattern: str = DEFAULT_TEST_USER_PATTERN,
        client: Any | None = None,
    ) -> None:
        self._client = client or AsyncIOMotorClient(connection_string)
        self._db = self._client[database_name]
        self.user_pattern = user_pattern

    async def get_verification_token(self, identity: str) -> str | None:
        try:
            user = await self._db["users"].find_one({"email": identity})
        except PyMongoError as e:
            raise DataStoreError(str(e), operation="get_verification_token") from e

        if user is None:
            return None

        for verification in user.get("verifications", []):
            if verification.get("type") != "email-verification":
                continue
            token = verification.get("token", "")
            if token.startswith(VERIFICATION_PREFIX):
                return token[len(VERIFICATION_PREFIX):]
            return token or None
        return None

    async def cleanup(self, identity: str) -> None:
        users = self._db["users"]
        try:
            user = await users.find_one({"email": identity})
            if user is None:
                return

            creator_id = str(user["_id"])
            for name in self.OWNED_COLLECTIONS:
                await self._db[name].delete_many({"creatorId": creator_id})
            await users.delete_one({"email": identity})
        except PyMongoError as e:
            raise DataStoreError(str(e), operation="cleanup") from e

        logger.debug(f"Cleaned up test user {identity}")

    async def purge(self) -> int:
        logger.info(f"Cleaning up test users matching pattern: {self.user_pattern}")
        try:
            cursor = self._db["users"].find(
                {"email": {"$regex": re.compile(self.user_pattern)}},
                {"email": 1},
            )
            emails = [doc["email"] async for doc in cursor]
        except PyMongoError as e:
            raise DataStoreError(str(e), operation="purge") from e

        for email in emails:
            await self.cleanup(email)

        logger.info(f"Cleaned up {len(emails)} test users")
        return len(emails)

    async def close(self) -> None:
        self._client.close()
