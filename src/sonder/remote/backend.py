"""Remote backend contract consumed by the sync engine and photo queue."""
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

Row = Dict[str, Any]
ChangeHandler = Callable[[Dict[str, Any]], Any]


@dataclass(frozen=True)
class Filter:
    """One column predicate of a select.

    op is one of "eq", "gte", "contains" (array column contains all values)
    or "in" (column value is one of values).
    """

    column: str
    op: str
    value: Any

    @classmethod
    def eq(cls, column: str, value: Any) -> "Filter":
        return cls(column, "eq", value)

    @classmethod
    def gte(cls, column: str, value: Any) -> "Filter":
        return cls(column, "gte", value)

    @classmethod
    def contains(cls, column: str, values: List[Any]) -> "Filter":
        return cls(column, "contains", list(values))

    @classmethod
    def in_(cls, column: str, values: List[Any]) -> "Filter":
        return cls(column, "in", list(values))

    def to_realtime(self) -> str:
        """Realtime filter string, e.g. "user_id=eq.<uuid>"."""
        return f"{self.column}={self.op}.{self.value}"


class RemoteBackend(Protocol):
    """Upsert / select / delete / subscribe over the remote tables, plus photo storage."""

    async def current_user_id(self) -> Optional[str]:
        ...

    async def upsert(self, table: str, row: Row) -> None:
        ...

    async def select(self, table: str, filters: Sequence[Filter] = ()) -> List[Row]:
        ...

    async def delete(self, table: str, record_id: str) -> None:
        ...

    async def subscribe(
        self, table: str, filters: Sequence[Filter], on_change: ChangeHandler
    ) -> Any:
        ...

    async def unsubscribe(self, handle: Any) -> None:
        ...

    async def upload_photo(self, path: str, data: bytes, content_type: str) -> str:
        ...
