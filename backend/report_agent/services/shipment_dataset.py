"""Synthetic shipment dataset used as the data-query layer in demo mode.

Rows are generated deterministically per customer from a seed, so every demo
customer gets a stable book of loads without a database.
"""
from __future__ import annotations

import random
from collections import Counter
from dataclasses import dataclass
from datetime import date, timedelta
from threading import Lock
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from report_agent.core.errors import DataQueryError
from report_agent.services.query_service import QueryScope
from report_agent.services.sanitizer import DEFAULT_RESTRICTED_FIELDS


CARRIERS = [
    ("CR-101", "Swift Transportation", "FTL", "SWFT", "AZ"),
    ("CR-102", "J.B. Hunt", "Intermodal", "JBHT", "AR"),
    ("CR-103", "Old Dominion", "LTL", "ODFL", "NC"),
    ("CR-104", "XPO Logistics", "LTL", "XPOL", "CT"),
    ("CR-105", "Schneider National", "FTL", "SNDR", "WI"),
    ("CR-106", "Estes Express", "LTL", "EXLA", "VA"),
    ("CR-107", "Landstar", "FTL", "LSTR", "FL"),
    ("CR-108", "FedEx Freight", "LTL", "FXFE", "TN"),
]
LOCATIONS = [
    ("FL", "Tampa"),
    ("FL", "Fort Myers"),
    ("GA", "Atlanta"),
    ("TX", "Dallas"),
    ("TX", "Houston"),
    ("IL", "Chicago"),
    ("CA", "Ontario"),
    ("OH", "Columbus"),
    ("PA", "Allentown"),
    ("NC", "Charlotte"),
    ("TN", "Memphis"),
    ("AZ", "Phoenix"),
]
COMMODITIES = ["cement", "tile adhesive", "grout", "concrete block", "rebar", "pavers", "stucco"]
EQUIPMENT = ["dry_van", "flatbed", "reefer", "bulk"]
STATUSES = ["delivered", "in_transit", "booked", "cancelled"]
STATUS_WEIGHTS = [78, 12, 7, 3]
NOTES = [
    "Liftgate required",
    "Appointment delivery",
    "Driver detained at shipper",
    "Residential delivery",
    "Hazmat paperwork attached",
]
ACCESSORIALS = [0.0, 0.0, 0.0, 75.0, 150.0, 225.0]


@dataclass(frozen=True)
class FieldSpec:
    name: str
    data_type: str
    description: str
    groupable: bool = False
    aggregatable: bool = False
    searchable: bool = False


@dataclass(frozen=True)
class TableSpec:
    name: str
    category: str
    description: str
    fields: Tuple[FieldSpec, ...]

    def field_names(self) -> List[str]:
        return [item.name for item in self.fields]


TABLES: Dict[str, TableSpec] = {
    "shipment": TableSpec(
        name="shipment",
        category="core",
        description="One row per load moved for the customer",
        fields=(
            FieldSpec("load_id", "string", "Load identifier", searchable=True),
            FieldSpec("reference_number", "string", "Customer PO or reference", searchable=True),
            FieldSpec("pickup_date", "date", "Date the load was picked up", groupable=True),
            FieldSpec("delivery_date", "date", "Date the load was delivered", groupable=True),
            FieldSpec("origin_city", "string", "Pickup city", groupable=True, searchable=True),
            FieldSpec("origin_state", "string", "Pickup state", groupable=True, searchable=True),
            FieldSpec("destination_city", "string", "Delivery city", groupable=True, searchable=True),
            FieldSpec("destination_state", "string", "Delivery state", groupable=True, searchable=True),
            FieldSpec("carrier_id", "string", "Carrier identifier", groupable=True),
            FieldSpec("carrier_name", "string", "Carrier that moved the load", groupable=True, searchable=True),
            FieldSpec("mode_name", "string", "Transport mode (FTL, LTL, Intermodal)", groupable=True),
            FieldSpec("equipment_type", "string", "Trailer type", groupable=True),
            FieldSpec("commodity", "string", "What was shipped", groupable=True, searchable=True),
            FieldSpec("status", "string", "Shipment status", groupable=True),
            FieldSpec("on_time", "boolean", "Delivered on or before appointment", groupable=True),
            FieldSpec("weight_lbs", "number", "Shipment weight in pounds", aggregatable=True),
            FieldSpec("miles", "number", "Billed miles", aggregatable=True),
            FieldSpec("retail", "number", "Amount charged to the customer", aggregatable=True),
            FieldSpec("cost", "number", "Total carrier cost including accessorials", aggregatable=True),
            FieldSpec("carrier_pay", "number", "Linehaul paid to the carrier", aggregatable=True),
            FieldSpec("margin", "number", "Retail minus cost", aggregatable=True),
            FieldSpec("margin_percent", "number", "Margin as a percent of retail", aggregatable=True),
            FieldSpec("cost_per_mile", "number", "Carrier cost per billed mile", aggregatable=True),
            FieldSpec("notes", "string", "Free-text handling notes", searchable=True),
        ),
    ),
    "carrier": TableSpec(
        name="carrier",
        category="reference",
        description="Carriers available to move freight",
        fields=(
            FieldSpec("carrier_id", "string", "Carrier identifier", groupable=True),
            FieldSpec("carrier_name", "string", "Carrier legal name", groupable=True, searchable=True),
            FieldSpec("mode_name", "string", "Primary mode", groupable=True),
            FieldSpec("scac", "string", "Standard carrier alpha code", groupable=True, searchable=True),
            FieldSpec("hq_state", "string", "Headquarters state", groupable=True),
        ),
    ),
}

JOINS: Dict[str, List[Dict[str, str]]] = {
    "shipment": [{"table": "carrier", "join_on": "shipment.carrier_id = carrier.carrier_id", "type": "left"}],
    "carrier": [{"table": "shipment", "join_on": "carrier.carrier_id = shipment.carrier_id", "type": "inner"}],
}
JOIN_KEYS: Dict[Tuple[str, str], Tuple[str, str]] = {
    ("shipment", "carrier"): ("carrier_id", "carrier_id"),
    ("carrier", "shipment"): ("carrier_id", "carrier_id"),
}

BLANK_GROUP = "(blank)"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _compare(left: Any, right: Any) -> Optional[int]:
    if left is None or right is None:
        return None
    try:
        a, b = float(left), float(right)
    except (TypeError, ValueError):
        a, b = str(left).lower(), str(right).lower()
    return (a > b) - (a < b)


def _matches(row: Dict[str, Any], flt: Dict[str, Any]) -> bool:
    value = row.get(flt["field"])
    target = flt.get("value")
    operator = flt.get("operator") or "eq"
    if operator == "eq":
        return _normalize(value) == _normalize(target)
    if operator == "neq":
        return _normalize(value) != _normalize(target)
    if operator == "contains":
        return value is not None and str(target or "").lower() in str(value).lower()
    if operator == "in":
        options = target if isinstance(target, (list, tuple, set)) else [target]
        return _normalize(value) in {_normalize(item) for item in options}
    result = _compare(value, target)
    if result is None:
        return False
    return {
        "gt": result > 0,
        "gte": result >= 0,
        "lt": result < 0,
        "lte": result <= 0,
    }.get(operator, False)


def _aggregate(rows: Sequence[Dict[str, Any]], field_name: str, function: str) -> float:
    if function == "count":
        if field_name in ("*", ""):
            return len(rows)
        return sum(1 for row in rows if row.get(field_name) is not None)
    numbers = [float(row[field_name]) for row in rows if _is_number(row.get(field_name))]
    if not numbers:
        return 0.0
    if function == "sum":
        result = sum(numbers)
    elif function == "avg":
        result = sum(numbers) / len(numbers)
    elif function == "min":
        result = min(numbers)
    elif function == "max":
        result = max(numbers)
    else:
        raise DataQueryError(f"Unsupported aggregation '{function}'")
    return round(result, 2)


def _group_label(value: Any) -> str:
    if value is None or value == "":
        return BLANK_GROUP
    return str(value)


def _sort_rows(rows: List[Dict[str, Any]], key: str, descending: bool) -> List[Dict[str, Any]]:
    present = [row for row in rows if row.get(key) is not None]
    missing = [row for row in rows if row.get(key) is None]
    present.sort(key=lambda row: (0, row[key]) if _is_number(row[key]) else (1, str(row[key])), reverse=descending)
    return present + missing


class DemoShipmentDataset:
    """Deterministic synthetic shipments implementing ``DataQueryService``."""

    def __init__(
        self,
        seed: int = 42,
        rows_per_customer: int = 400,
        restricted_fields: Optional[Iterable[str]] = None,
        today: Optional[date] = None,
    ) -> None:
        self.seed = seed
        self.rows_per_customer = max(1, rows_per_customer)
        fields = restricted_fields if restricted_fields is not None else DEFAULT_RESTRICTED_FIELDS
        self.restricted_fields: FrozenSet[str] = frozenset(item.lower() for item in fields)
        self._today = today or date.today()
        self._cache: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = Lock()

    # Row sources

    def _shipments(self, customer_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._cache.get(customer_id)
            if rows is None:
                rows = self._generate_shipments(customer_id)
                self._cache[customer_id] = rows
            return rows

    def _generate_shipments(self, customer_id: str) -> List[Dict[str, Any]]:
        rng = random.Random(f"{self.seed}:{customer_id}")
        rows: List[Dict[str, Any]] = []
        for index in range(self.rows_per_customer):
            carrier_id, carrier_name, mode_name, _, _ = rng.choice(CARRIERS)
            origin_state, origin_city = rng.choice(LOCATIONS)
            destination_state, destination_city = rng.choice(
                [location for location in LOCATIONS if location[0] != origin_state]
            )
            pickup = self._today - timedelta(days=rng.randint(0, 364))
            status = rng.choices(STATUSES, weights=STATUS_WEIGHTS)[0]
            delivered = status == "delivered"
            miles = round(rng.uniform(80, 2200), 1)
            retail = round(miles * rng.uniform(2.2, 3.8), 2)
            carrier_pay = round(retail * rng.uniform(0.70, 0.86), 2)
            cost = round(carrier_pay + rng.choice(ACCESSORIALS), 2)
            margin = round(retail - cost, 2)
            rows.append(
                {
                    "load_id": f"LD{customer_id}-{index + 1:05d}",
                    "customer_id": customer_id,
                    "reference_number": f"PO-{rng.randint(100000, 999999)}" if rng.random() < 0.86 else None,
                    "pickup_date": pickup.isoformat(),
                    "delivery_date": (pickup + timedelta(days=rng.randint(1, 5))).isoformat() if delivered else None,
                    "origin_city": origin_city,
                    "origin_state": origin_state,
                    "destination_city": destination_city,
                    "destination_state": destination_state,
                    "carrier_id": carrier_id,
                    "carrier_name": carrier_name,
                    "mode_name": mode_name,
                    "equipment_type": rng.choice(EQUIPMENT),
                    "commodity": rng.choice(COMMODITIES) if rng.random() < 0.93 else None,
                    "status": status,
                    "on_time": (rng.random() < 0.9) if delivered else None,
                    "weight_lbs": rng.randint(800, 44000),
                    "miles": miles,
                    "retail": retail,
                    "cost": cost,
                    "carrier_pay": carrier_pay,
                    "margin": margin,
                    "margin_percent": round(margin / retail * 100, 2) if retail else 0.0,
                    "cost_per_mile": round(cost / miles, 2) if miles else 0.0,
                    "notes": rng.choice(NOTES) if rng.random() < 0.3 else None,
                }
            )
        return rows

    def _rows(self, scope: QueryScope, table_name: str) -> List[Dict[str, Any]]:
        if table_name == "shipment":
            return self._shipments(scope.customer_id)
        if table_name == "carrier":
            return [
                {"carrier_id": cid, "carrier_name": name, "mode_name": mode, "scac": scac, "hq_state": hq}
                for cid, name, mode, scac, hq in CARRIERS
            ]
        raise DataQueryError(f"Unknown table '{table_name}'")

    # Field visibility

    def _table(self, table_name: str) -> TableSpec:
        table = TABLES.get((table_name or "").strip().lower())
        if table is None:
            raise DataQueryError(f"Unknown table '{table_name}'")
        return table

    def _is_hidden(self, scope: QueryScope, field_name: str) -> bool:
        plain = field_name.split(".")[-1].lower()
        return not scope.is_admin and plain in self.restricted_fields

    def _visible_fields(self, scope: QueryScope, table: TableSpec) -> List[FieldSpec]:
        return [item for item in table.fields if not self._is_hidden(scope, item.name)]

    def available_fields(self, scope: QueryScope) -> FrozenSet[str]:
        names: Set[str] = set()
        for table in TABLES.values():
            names.update(item.name for item in self._visible_fields(scope, table))
        return frozenset(names)

    def _check_fields(self, scope: QueryScope, known: Set[str], names: Iterable[Optional[str]]) -> None:
        for name in names:
            if not name or name == "*":
                continue
            if self._is_hidden(scope, name):
                raise DataQueryError(f"Field '{name}' is restricted and not available")
            if name not in known:
                raise DataQueryError(f"Unknown field '{name}'")

    def _strip_hidden(self, scope: QueryScope, row: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: value
            for key, value in row.items()
            if key.split(".")[-1] != "customer_id" and not self._is_hidden(scope, key)
        }

    # Discovery

    async def discover_tables(
        self, scope: QueryScope, category: Optional[str] = None, include_row_counts: bool = False
    ) -> List[Dict[str, Any]]:
        tables = []
        for table in TABLES.values():
            if category and table.category != category:
                continue
            entry: Dict[str, Any] = {
                "table_name": table.name,
                "category": table.category,
                "description": table.description,
                "field_count": len(self._visible_fields(scope, table)),
            }
            if include_row_counts:
                entry["row_count"] = len(self._rows(scope, table.name))
            tables.append(entry)
        return tables

    async def discover_fields(
        self, scope: QueryScope, table_name: str, include_samples: bool = True
    ) -> List[Dict[str, Any]]:
        table = self._table(table_name)
        rows = self._rows(scope, table.name) if include_samples else []
        fields = []
        for item in self._visible_fields(scope, table):
            entry: Dict[str, Any] = {
                "field_name": item.name,
                "data_type": item.data_type,
                "description": item.description,
                "is_groupable": item.groupable,
                "is_aggregatable": item.aggregatable,
                "is_searchable": item.searchable,
            }
            if include_samples:
                samples: List[Any] = []
                for row in rows:
                    value = row.get(item.name)
                    if value is not None and value not in samples:
                        samples.append(value)
                    if len(samples) >= 3:
                        break
                entry["sample_values"] = samples
            fields.append(entry)
        return fields

    async def discover_joins(self, scope: QueryScope, table_name: str) -> List[Dict[str, Any]]:
        table = self._table(table_name)
        return [dict(join) for join in JOINS.get(table.name, [])]

    # Querying

    def _run_query(
        self,
        scope: QueryScope,
        rows: List[Dict[str, Any]],
        known: Set[str],
        select: List[str],
        filters: List[Dict[str, Any]],
        group_by: List[str],
        aggregations: List[Dict[str, Any]],
        order_by: Optional[str],
        order_dir: str,
        limit: int,
    ) -> List[Dict[str, Any]]:
        referenced = list(select) + [flt.get("field") for flt in filters] + list(group_by)
        referenced += [agg.get("field") for agg in aggregations]
        self._check_fields(scope, known, referenced)

        matched = [row for row in rows if all(_matches(row, flt) for flt in filters)]

        if group_by or aggregations:
            specs = aggregations or [{"field": "*", "function": "count", "alias": "count"}]
            groups: Dict[Tuple[Any, ...], List[Dict[str, Any]]] = {}
            for row in matched:
                groups.setdefault(tuple(row.get(name) for name in group_by), []).append(row)
            if not group_by and not groups:
                groups[()] = []
            data = []
            for key, members in groups.items():
                out: Dict[str, Any] = {name: value for name, value in zip(group_by, key)}
                for spec in specs:
                    function = spec.get("function") or "sum"
                    field_name = spec.get("field") or "*"
                    alias = spec.get("alias") or f"{function}_{field_name.replace('*', 'rows').replace('.', '_')}"
                    out[alias] = _aggregate(members, field_name, function)
                data.append(out)
        else:
            wanted = None if not select or "*" in select else list(select)
            data = []
            for row in matched:
                visible = self._strip_hidden(scope, row)
                data.append(visible if wanted is None else {name: visible.get(name) for name in wanted})

        if order_by:
            if data and order_by not in data[0]:
                self._check_fields(scope, known, [order_by])
            data = _sort_rows(data, order_by, descending=(order_dir or "desc").lower() != "asc")
        return data[: max(1, limit)]

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
    ) -> Dict[str, Any]:
        table = self._table(table_name)
        data = self._run_query(
            scope,
            self._rows(scope, table.name),
            set(table.field_names()),
            select,
            filters,
            group_by,
            aggregations,
            order_by,
            order_dir,
            limit,
        )
        return {
            "row_count": len(data),
            "data": data,
            "query": {"table": table.name, "filters": len(filters), "group_by": group_by},
        }

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
    ) -> Dict[str, Any]:
        base = self._table(base_table)
        rows = [dict(row) for row in self._rows(scope, base.name)]
        known = set(base.field_names()) | {f"{base.name}.{name}" for name in base.field_names()}
        for row in rows:
            for name in base.field_names():
                row[f"{base.name}.{name}"] = row.get(name)

        for join in joins:
            other = self._table(join.get("table", ""))
            keys = JOIN_KEYS.get((base.name, other.name))
            if keys is None:
                raise DataQueryError(f"No relationship between '{base.name}' and '{other.name}'")
            left_key, right_key = keys
            index: Dict[Any, List[Dict[str, Any]]] = {}
            for other_row in self._rows(scope, other.name):
                index.setdefault(other_row.get(right_key), []).append(other_row)

            inner = (join.get("type") or "left") == "inner"
            joined: List[Dict[str, Any]] = []
            for row in rows:
                partners = index.get(row.get(left_key), [])
                if not partners:
                    if not inner:
                        joined.append(row)
                    continue
                for partner in partners:
                    merged = dict(row)
                    for name, value in partner.items():
                        merged[f"{other.name}.{name}"] = value
                        merged.setdefault(name, value)
                    joined.append(merged)
            rows = joined
            known |= {f"{other.name}.{name}" for name in other.field_names()} | set(other.field_names())

        data = self._run_query(
            scope, rows, known, select, filters, group_by, aggregations, order_by, "desc", limit
        )
        return {
            "row_count": len(data),
            "data": data,
            "query": {"base_table": base.name, "joins": [join.get("table") for join in joins]},
        }

    def _grouped(
        self,
        scope: QueryScope,
        table: TableSpec,
        group_by: str,
        metric: str,
        aggregation: str,
        filters: Optional[List[Dict[str, Any]]],
    ) -> List[Dict[str, Any]]:
        known = set(table.field_names())
        self._check_fields(scope, known, [group_by, metric] + [flt.get("field") for flt in filters or []])
        groups: Dict[str, List[Dict[str, Any]]] = {}
        for row in self._rows(scope, table.name):
            if all(_matches(row, flt) for flt in filters or []):
                groups.setdefault(_group_label(row.get(group_by)), []).append(row)
        results = [
            {"name": name, "value": _aggregate(members, metric, aggregation), "count": len(members)}
            for name, members in groups.items()
        ]
        results.sort(key=lambda item: item["value"], reverse=True)
        return results

    async def aggregate(
        self,
        scope: QueryScope,
        table_name: str,
        group_by: str,
        metric: str,
        aggregation: str,
        filters: Optional[List[Dict[str, Any]]] = None,
        limit: int = 20,
    ) -> Dict[str, Any]:
        results = self._grouped(scope, self._table(table_name), group_by, metric, aggregation, filters)
        data = results[: max(1, limit)]
        return {"row_count": len(data), "data": data, "total_groups": len(results)}

    async def preview_grouping(
        self, scope: QueryScope, group_by: str, metric: str, aggregation: str = "sum", limit: int = 15
    ) -> Dict[str, Any]:
        results = self._grouped(scope, TABLES["shipment"], group_by, metric, aggregation, None)
        return {
            "group_by": group_by,
            "metric": metric,
            "aggregation": aggregation,
            "results": results[: max(1, limit)],
            "total_groups": len(results),
        }

    async def explore_field(self, scope: QueryScope, field_name: str, sample_size: int = 15) -> Dict[str, Any]:
        if self._is_hidden(scope, field_name):
            raise DataQueryError(f"Field '{field_name}' is restricted and not available")
        table = next((spec for spec in TABLES.values() if field_name in spec.field_names()), None)
        if table is None:
            raise DataQueryError(f"Unknown field '{field_name}'")

        rows = self._rows(scope, table.name)
        values = [row.get(field_name) for row in rows]
        populated = [value for value in values if value is not None and value != ""]
        counts = Counter(populated)
        return {
            "field_name": field_name,
            "table_name": table.name,
            "values": [{"value": value, "count": count} for value, count in counts.most_common(sample_size)],
            "total_count": len(values),
            "populated_count": len(populated),
            "unique_count": len(counts),
        }

    async def search_text(
        self,
        scope: QueryScope,
        query: str,
        tables: Optional[List[str]] = None,
        fields: Optional[List[str]] = None,
        match_type: str = "contains",
        limit: int = 50,
    ) -> Dict[str, Any]:
        needle = (query or "").strip().lower()
        if not needle:
            raise DataQueryError("Search query is empty")
        table_specs = [self._table(name) for name in tables] if tables else list(TABLES.values())

        results = []
        for table in table_specs:
            for spec in self._visible_fields(scope, table):
                if not spec.searchable or (fields and spec.name not in fields):
                    continue
                matches: List[str] = []
                for row in self._rows(scope, table.name):
                    value = row.get(spec.name)
                    if value is None:
                        continue
                    text = str(value).lower()
                    if (
                        (match_type == "exact" and text == needle)
                        or (match_type == "starts_with" and text.startswith(needle))
                        or (match_type == "contains" and needle in text)
                    ):
                        matches.append(str(value))
                if matches:
                    results.append(
                        {
                            "table": table.name,
                            "field": spec.name,
                            "match_count": len(matches),
                            "sample_values": list(dict.fromkeys(matches))[:5],
                        }
                    )
        results.sort(key=lambda item: item["match_count"], reverse=True)
        return {
            "total_matches": sum(item["match_count"] for item in results),
            "results": results[: max(1, limit)],
        }
