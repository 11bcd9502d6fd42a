"""Storage for encrypted vendor OAuth tokens."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from asyncpg import Pool

from .config.settings import TokenStoreConfig


logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ('access_token_cipher', 'refresh_token_cipher', 'scope', 'expires_at')


@dataclass
class TokenRecord:
    """Encrypted tokens for one user. Plaintext tokens never live here."""
    user_id: str
    access_token_cipher: str
    refresh_token_cipher: Optional[str] = None
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _check_patch(patch: Dict[str, Any]):
    unknown = set(patch) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Cannot update token fields: {', '.join(sorted(unknown))}")


class TokenStore(ABC):
    """Token persistence interface."""

    async def initialize(self):
        pass

    @abstractmethod
    async def put(self, record: TokenRecord) -> TokenRecord:
        """Insert or replace the tokens for record.user_id."""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[TokenRecord]:
        ...

    @abstractmethod
    async def update(self, user_id: str, /, **patch) -> Optional[TokenRecord]:
        """Patch stored fields. Returns None when the user has no tokens."""


class InMemoryTokenStore(TokenStore):
    """Process-local store for development and tests."""

    def __init__(self):
        self._records: Dict[str, TokenRecord] = {}
        self._lock = asyncio.Lock()

    async def put(self, record: TokenRecord) -> TokenRecord:
        async with self._lock:
            existing = self._records.get(record.user_id)
            now = datetime.now(timezone.utc)
            stored = replace(
                record,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._records[record.user_id] = stored
            return stored

    async def get(self, user_id: str) -> Optional[TokenRecord]:
        return self._records.get(user_id)

    async def update(self, user_id: str, /, **patch) -> Optional[TokenRecord]:
        _check_patch(patch)
        async with self._lock:
            existing = self._records.get(user_id)
            if existing is None:
                return None
            updated = replace(existing, updated_at=datetime.now(timezone.utc), **patch)
            self._records[user_id] = updated
            return updated


class PostgresTokenStore(TokenStore):
    """Stores tokens in the vendor_tokens table, one row per user."""

    def __init__(self, pool: Pool, table: str = "vendor_tokens"):
        self.pool = pool
        self.table = table

    async def initialize(self):
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    user_id TEXT PRIMARY KEY,
                    access_token_cipher TEXT NOT NULL,
                    refresh_token_cipher TEXT,
                    scope TEXT,
                    expires_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
        logger.info(f"Token table {self.table} ready")

    @staticmethod
    def _to_record(row) -> TokenRecord:
        return TokenRecord(
            user_id=row['user_id'],
            access_token_cipher=row['access_token_cipher'],
            refresh_token_cipher=row['refresh_token_cipher'],
            scope=row['scope'],
            expires_at=row['expires_at'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    async def put(self, record: TokenRecord) -> TokenRecord:
        row = await self.pool.fetchrow(
            f"""
            INSERT INTO {self.table}
                (user_id, access_token_cipher, refresh_token_cipher, scope, expires_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (user_id) DO UPDATE SET
                access_token_cipher = EXCLUDED.access_token_cipher,
                refresh_token_cipher = EXCLUDED.refresh_token_cipher,
                scope = EXCLUDED.scope,
                expires_at = EXCLUDED.expires_at,
                updated_at = now()
            RETURNING *
            """,
            record.user_id,
            record.access_token_cipher,
            record.refresh_token_cipher,
            record.scope,
            record.expires_at,
        )
        return self._to_record(row)

    async def get(self, user_id: str) -> Optional[TokenRecord]:
        row = await self.pool.fetchrow(f"SELECT * FROM {self.table} WHERE user_id = $1", user_id)
        return self._to_record(row) if row else None

    async def update(self, user_id: str, /, **patch) -> Optional[TokenRecord]:
        _check_patch(patch)
        if not patch:
            return await self.get(user_id)

        columns = list(patch)
        assignments = ', '.join(f"{column} = ${index}" for index, column in enumerate(columns, start=2))
        row = await self.pool.fetchrow(
            f"UPDATE {self.table} SET {assignments}, updated_at = now() "
            f"WHERE user_id = $1 RETURNING *",
            user_id,
            *(patch[column] for column in columns),
        )
        return self._to_record(row) if row else None


def create_token_store(config: TokenStoreConfig, pool: Optional[Pool] = None) -> TokenStore:
    """Pick the token store implementation from configuration."""
    if config.backend == 'memory':
        logger.info("Using in-memory token store")
        return InMemoryTokenStore()

    if config.backend == 'postgres':
        if pool is None:
            raise ValueError("The postgres token store needs a database pool")
        logger.info("Using Postgres token store")
        return PostgresTokenStore(pool)

    raise ValueError(f"Unknown token store backend: {config.backend}")
