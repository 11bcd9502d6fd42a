"""PostgreSQL storage for normalized records."""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

import asyncpg
from asyncpg import Pool

from .config.settings import DatabaseConfig


logger = logging.getLogger(__name__)


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class TableDefinition:
    """Table layout and how record keys map onto its columns."""
    name: str
    field_mappings: Mapping[str, str]
    create_sql: str
    conflict_columns: Tuple[str, ...] = ('user_id', 'date')
    converters: Mapping[str, Callable[[Any], Any]] = field(default_factory=dict)


HRV_TABLE = TableDefinition(
    name='hrv_data',
    field_mappings={
        'userId': 'user_id',
        'date': 'date',
        'rMSSD': 'rmssd',
        'lnRMSSD': 'ln_rmssd',
        'readinessScore': 'readiness_score',
        'vendor': 'vendor',
        'capturedAt': 'captured_at',
    },
    converters={'date': _to_date, 'captured_at': _to_datetime},
    create_sql="""
        CREATE TABLE IF NOT EXISTS hrv_data (
            id BIGSERIAL PRIMARY KEY,
            user_id TEXT NOT NULL,
            date DATE NOT NULL,
            rmssd DOUBLE PRECISION NOT NULL,
            ln_rmssd DOUBLE PRECISION,
            readiness_score DOUBLE PRECISION,
            vendor TEXT NOT NULL DEFAULT 'unknown',
            captured_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (user_id, date)
        )
    """,
)

SLEEP_TABLE = TableDefinition(
    name='sleep_data',
    field_mappings={
        'userId': 'user_id',
        'date': 'date',
        'durationMinutes': 'duration_minutes',
        'qualityScore': 'quality_score',
        'vendor': 'vendor',
        'capturedAt': 'captured_at',
    },
    converters={'date': _to_date, 'captured_at': _to_datetime},
    create_sql="""
        CREATE TABLE IF NOT EXISTS sleep_data (
            id BIGSERIAL PRIMARY KEY,
            user_id TEXT NOT NULL,
            date DATE NOT NULL,
            duration_minutes DOUBLE PRECISION NOT NULL,
            quality_score DOUBLE PRECISION,
            vendor TEXT NOT NULL DEFAULT 'unknown',
            captured_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (user_id, date)
        )
    """,
)

TABLES: Dict[str, TableDefinition] = {definition.name: definition for definition in (HRV_TABLE, SLEEP_TABLE)}


@dataclass
class UpsertResult:
    inserted: bool
    created_at: datetime
    updated_at: datetime


def build_upsert(definition: TableDefinition, record: Mapping[str, Any]) -> Tuple[str, list]:
    """
    Build an idempotent upsert for the mapped keys present in record.

    On conflict the measurement columns and updated_at are overwritten;
    created_at keeps its first value.
    """
    columns = []
    values = []

    for record_key, column in definition.field_mappings.items():
        if record_key not in record:
            continue
        value = record[record_key]
        converter = definition.converters.get(column)
        if converter is not None and value is not None:
            value = converter(value)
        columns.append(column)
        values.append(value)

    missing = [column for column in definition.conflict_columns if column not in columns]
    if missing:
        raise ValueError(f"Record for {definition.name} is missing key columns: {', '.join(missing)}")

    placeholders = [f'${i}' for i in range(1, len(values) + 1)]
    updates = [
        f"{column} = EXCLUDED.{column}"
        for column in columns if column not in definition.conflict_columns
    ]
    updates.append("updated_at = now()")

    query = f"""
        INSERT INTO {definition.name} ({', '.join(columns)})
        VALUES ({', '.join(placeholders)})
        ON CONFLICT ({', '.join(definition.conflict_columns)}) DO UPDATE SET
            {', '.join(updates)}
        RETURNING created_at, updated_at, (xmax = 0) AS inserted
    """
    return query, values


async def create_pool(config: DatabaseConfig) -> Pool:
    return await asyncpg.create_pool(
        dsn=config.url,
        min_size=config.pool_min_size,
        max_size=config.pool_max_size,
        command_timeout=config.command_timeout_seconds,
    )


class RecordRepository:
    """Upserts normalized records keyed by (user_id, date)."""

    def __init__(self, pool: Pool, tables: Optional[Iterable[TableDefinition]] = None):
        self.pool = pool
        self.tables: Dict[str, TableDefinition] = (
            {definition.name: definition for definition in tables} if tables is not None else dict(TABLES)
        )

        self.stats = {
            "inserted": 0,
            "updated": 0,
            "write_errors": 0,
            "last_write_time": None
        }

    async def create_tables(self):
        async with self.pool.acquire() as conn:
            for definition in self.tables.values():
                await conn.execute(definition.create_sql)
        logger.info(f"Tables ready: {', '.join(self.tables)}")

    async def upsert(self, table: str, record: Mapping[str, Any]) -> UpsertResult:
        """Insert or update one record. Atomicity comes from the unique key."""
        definition = self.tables.get(table)
        if definition is None:
            raise ValueError(f"Unknown table: {table}")

        query, values = build_upsert(definition, record)

        try:
            row = await self.pool.fetchrow(query, *values)
        except Exception:
            self.stats["write_errors"] += 1
            raise

        result = UpsertResult(
            inserted=bool(row['inserted']),
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )
        self.stats["inserted" if result.inserted else "updated"] += 1
        self.stats["last_write_time"] = datetime.now(timezone.utc).isoformat()
        return result

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self.pool.fetchval("SELECT 1")
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"status": "unhealthy", "error": str(e), "stats": dict(self.stats)}
        return {"status": "healthy", "stats": dict(self.stats)}
