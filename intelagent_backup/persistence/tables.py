from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Mapping
from uuid import UUID

from sqlalchemy import Date, DateTime, LargeBinary, Numeric, Uuid, delete, insert, inspect, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.types import TypeEngine

from intelagent_backup.core.errors import ConfigurationError
from intelagent_backup.domain.models import LOGICAL_TABLES, Base


Row = dict[str, Any]
FetchRows = Callable[..., Awaitable[list[Row]]]
WriteRows = Callable[[list[Row]], Awaitable[int]]


def encode_value(value: Any) -> Any:
    # Convert driver values into JSON-safe primitives for table snapshots.
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return value


def decode_value(column_type: TypeEngine[Any], value: Any) -> Any:
    # Coerce snapshot primitives back into the types the column expects.
    if value is None:
        return None
    if isinstance(column_type, DateTime) and isinstance(value, str):
        return datetime.fromisoformat(value)
    if isinstance(column_type, Date) and isinstance(value, str):
        return date.fromisoformat(value)
    if isinstance(column_type, Numeric) and column_type.asdecimal and not isinstance(value, Decimal):
        return Decimal(str(value))
    if isinstance(column_type, Uuid) and column_type.as_uuid and isinstance(value, str):
        return UUID(value)
    if isinstance(column_type, LargeBinary) and isinstance(value, str):
        return base64.b64decode(value)
    return value


@dataclass(frozen=True)
class TableAccessor:
    # Data-access closures for one logical table.
    name: str
    fetch_all: FetchRows
    delete_all: Callable[[], Awaitable[int]]
    insert_many: WriteRows
    replace_all: WriteRows


def build_accessor(
    name: str,
    model: type[Base],
    sessionmaker: async_sessionmaker[AsyncSession],
) -> TableAccessor:
    mapper = inspect(model)
    column_types = {attr.key: attr.columns[0].type for attr in mapper.column_attrs}
    order_by = list(mapper.primary_key)
    created_at = column_types.get("created_at")

    def _to_row(instance: Base) -> Row:
        return {key: encode_value(getattr(instance, key)) for key in column_types}

    def _from_row(row: Mapping[str, Any]) -> Row:
        unknown = set(row) - set(column_types)
        if unknown:
            raise ValueError(f"{name}: unknown columns {sorted(unknown)}")
        return {key: decode_value(column_types[key], value) for key, value in row.items()}

    async def fetch_all(*, since: datetime | None = None) -> list[Row]:
        statement = select(model).order_by(*order_by)
        if since is not None:
            if created_at is None:
                raise ValueError(f"{name} has no created_at column to filter on")
            statement = statement.where(model.created_at >= since)
        async with sessionmaker() as session:
            instances = (await session.execute(statement)).scalars().all()
            return [_to_row(instance) for instance in instances]

    async def delete_all() -> int:
        async with sessionmaker() as session:
            result = await session.execute(delete(model))
            await session.commit()
            return result.rowcount or 0

    async def _insert(session: AsyncSession, rows: list[Row]) -> int:
        if rows:
            await session.execute(insert(model), [_from_row(row) for row in rows])
        return len(rows)

    async def insert_many(rows: list[Row]) -> int:
        async with sessionmaker() as session:
            count = await _insert(session, rows)
            await session.commit()
            return count

    async def replace_all(rows: list[Row]) -> int:
        # Truncate and reload inside one transaction so a failed insert keeps the old rows.
        async with sessionmaker() as session:
            await session.execute(delete(model))
            count = await _insert(session, rows)
            await session.commit()
            return count

    return TableAccessor(
        name=name,
        fetch_all=fetch_all,
        delete_all=delete_all,
        insert_many=insert_many,
        replace_all=replace_all,
    )


class TableRegistry:
    """Explicit dispatch table from logical table name to its accessor."""

    def __init__(self, accessors: Iterable[TableAccessor]) -> None:
        self._accessors = {accessor.name: accessor for accessor in accessors}

    def __contains__(self, name: object) -> bool:
        return name in self._accessors

    @property
    def names(self) -> list[str]:
        return list(self._accessors)

    def get(self, name: str) -> TableAccessor:
        accessor = self._accessors.get(name)
        if accessor is None:
            raise ConfigurationError(f"unknown logical table: {name}")
        return accessor

    def resolve(self, names: Iterable[str]) -> list[TableAccessor]:
        return [self.get(name) for name in names]


def build_table_registry(
    sessionmaker: async_sessionmaker[AsyncSession],
    models: Mapping[str, type[Base]] | None = None,
) -> TableRegistry:
    models = models if models is not None else LOGICAL_TABLES
    return TableRegistry(build_accessor(name, model, sessionmaker) for name, model in models.items())
