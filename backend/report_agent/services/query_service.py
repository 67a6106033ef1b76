"""Contract for the customer data-query layer used by report tools."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Protocol


@dataclass(frozen=True)
class QueryScope:
    """Every query runs for exactly one customer and one visibility level."""

    customer_id: str
    is_admin: bool


class DataQueryService(Protocol):
    """Read-only access to a customer's shipment data.

    Implementations enforce customer isolation and hide restricted fields from
    non-admin scopes; they raise ``DataQueryError`` for bad tables or fields.
    """

    def available_fields(self, scope: QueryScope) -> FrozenSet[str]: ...

    async def discover_tables(
        self, scope: QueryScope, category: Optional[str] = None, include_row_counts: bool = False
    ) -> List[Dict[str, Any]]: ...

    async def discover_fields(
        self, scope: QueryScope, table_name: str, include_samples: bool = True
    ) -> List[Dict[str, Any]]: ...

    async def discover_joins(self, scope: QueryScope, table_name: str) -> List[Dict[str, Any]]: ...

    async def query_table(
        self,
        scope: QueryScope,
        table_name: str,
        select: List[str],
        filters: List[Dict[str, Any]],
        group_by: List[str],
        aggregations: List[Dict[str, Any]],
        order_by: Optional[str] = None,
        order_dir: str = "desc",
        limit: int = 100,
    ) -> Dict[str, Any]: ...

    async def search_text(
        self,
        scope: QueryScope,
        query: str,
        tables: Optional[List[str]] = None,
        fields: Optional[List[str]] = None,
        match_type: str = "contains",
        limit: int = 50,
    ) -> Dict[str, Any]: ...

    async def query_with_join(
        self,
        scope: QueryScope,
        base_table: str,
        joins: List[Dict[str, Any]],
        select: List[str],
        filters: List[Dict[str, Any]],
        group_by: List[str],
        aggregations: List[Dict[str, Any]],
        order_by: Optional[str] = None,
        limit: int = 100,
    ) -> Dict[str, Any]: ...

    async def aggregate(
        self,
        scope: QueryScope,
        table_name: str,
        group_by: str,
        metric: str,
        aggregation: str,
        filters: Optional[List[Dict[str, Any]]] = None,
        limit: int = 20,
    ) -> Dict[str, Any]: ...

    async def explore_field(self, scope: QueryScope, field_name: str, sample_size: int = 15) -> Dict[str, Any]: ...

    async def preview_grouping(
        self, scope: QueryScope, group_by: str, metric: str, aggregation: str = "sum", limit: int = 15
    ) -> Dict[str, Any]: ...
