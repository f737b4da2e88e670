"""SQL filter building shared by the ledger listings."""

from enum import Enum
from typing import Any

from billing.exceptions import InvalidInputError
from billing.models import ListFilters


def parse_status(value: str | None, enum_cls: type[Enum]) -> Enum | None:
    """
    Parse a status filter value.

    Raises:
        InvalidInputError: If the value is not a member of enum_cls
    """
    if value is None or value == "":
        return None
    try:
        return enum_cls(value.lower())
    except ValueError:
        valid = ", ".join(s.value for s in enum_cls)
        raise InvalidInputError(f"Unknown status '{value}'. Valid statuses: {valid}")


def build_where(
    filters: ListFilters,
    date_column: str,
    amount_column: str,
    search_columns: list[str],
    advertiser_column: str | None = None,
    campaign_column: str | None = None,
) -> tuple[list[str], list[Any]]:
    """
    Translate the common filters into WHERE clauses.

    Status is left to the caller because each entity has its own enum and
    projection rules. A listing without an advertiser or campaign column
    rejects that filter rather than ignoring it.

    Returns:
        (clauses, params) to be joined with AND

    Raises:
        InvalidInputError: If a reference filter is set for a listing that lacks it
    """
    clauses: list[str] = []
    params: list[Any] = []

    for value, column, name in (
        (filters.advertiser_id, advertiser_column, "advertiser_id"),
        (filters.campaign_id, campaign_column, "campaign_id"),
    ):
        if value is None:
            continue
        if column is None:
            raise InvalidInputError(f"'{name}' filter is not supported for this listing")
        clauses.append(f"{column} = %s")
        params.append(value)

    if filters.start_date is not None:
        clauses.append(f"{date_column} >= %s")
        params.append(filters.start_date)
    if filters.end_date is not None:
        clauses.append(f"{date_column} < %s")
        params.append(filters.end_date)
    if filters.min_amount_cents is not None:
        clauses.append(f"{amount_column} >= %s")
        params.append(filters.min_amount_cents)
    if filters.max_amount_cents is not None:
        clauses.append(f"{amount_column} <= %s")
        params.append(filters.max_amount_cents)

    search = (filters.search or "").strip()
    if search and search_columns:
        pattern = f"%{search}%"
        clauses.append("(" + " OR ".join(f"{col} ILIKE %s" for col in search_columns) + ")")
        params.extend([pattern] * len(search_columns))

    return clauses, params


def where_sql(clauses: list[str]) -> str:
    return ("WHERE " + " AND ".join(clauses)) if clauses else ""
