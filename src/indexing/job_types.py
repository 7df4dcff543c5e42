"""
Per-type contracts for indexing jobs.

Each JobTypeSpec owns its sink table schema, natural key, the fields updated on conflict,
the pydantic record model rows are validated against, and the transform that turns a
Helius enhanced-transaction payload into records.
"""

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.indexing.errors import ConfigurationError
from src.indexing.identifiers import quote_identifier, quote_table_name
from src.indexing.models import JobType
from src.utils.logging import get_logger

logger = get_logger(__name__)

LAMPORTS_PER_SOL = Decimal(1_000_000_000)


# Record models


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NftBidRecord(_Record):
    collection: str
    mint: str
    price: Decimal
    marketplace: str
    bidder: str
    expiry: datetime | None = None

    @field_validator("expiry")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class NftPriceRecord(_Record):
    collection: str
    mint: str
    price: Decimal
    marketplace: str
    seller: str


class TokenBorrowingRecord(_Record):
    token: str
    amount: Decimal
    platform: str
    interest_rate: Decimal = Field(alias="interestRate")
    available: bool


class TokenPriceRecord(_Record):
    token: str
    price: Decimal
    platform: str
    volume_24h: Decimal | None = Field(default=None, alias="volume24h")


# Payload helpers


def _as_transactions(payload: Any) -> list[dict[str, Any]]:
    """A list payload is used as-is, a single object is one transaction, anything else is none."""
    if isinstance(payload, list):
        return [tx for tx in payload if isinstance(tx, dict)]
    if isinstance(payload, dict):
        return [payload]
    return []


def _events(tx: Mapping[str, Any], key: str) -> list[dict[str, Any]]:
    events = tx.get("events")
    if not isinstance(events, dict):
        return []
    value = events.get(key)
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        return [event for event in value if isinstance(event, dict)]
    return []


def _allowed(value: Any, allow_list: Any) -> bool:
    """Empty or absent allow-list means no filter."""
    if not allow_list:
        return True
    return value in allow_list


def _native_amount(native: Any) -> Decimal | None:
    if not isinstance(native, dict):
        return None
    try:
        lamports = Decimal(str(native["amount"]))
    except (KeyError, InvalidOperation):
        return None
    return lamports / LAMPORTS_PER_SOL


def _token_amount(leg: Mapping[str, Any]) -> Decimal | None:
    raw = leg.get("rawTokenAmount")
    if not isinstance(raw, dict):
        return None
    try:
        amount = Decimal(str(raw["tokenAmount"]))
        decimals = int(raw.get("decimals", 0))
    except (KeyError, InvalidOperation, TypeError, ValueError):
        return None
    return amount.scaleb(-decimals)


# Transforms


def _transform_nft_events(
    payload: Any, config: Mapping[str, Any], tx_type: str, party_field: str
) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for tx in _as_transactions(payload):
        if tx.get("type") != tx_type:
            continue
        for event in _events(tx, "nft"):
            if not _allowed(event.get("collection"), config.get("collections")):
                continue
            if not _allowed(event.get("marketplace"), config.get("marketplaces")):
                continue
            row = {
                "collection": event.get("collection"),
                "mint": event.get("mint"),
                "price": event.get("amount"),
                "marketplace": event.get("marketplace"),
                party_field: event.get(party_field),
            }
            if party_field == "bidder":
                row["expiry"] = event.get("expiry")
            rows.append(row)
    return rows


def transform_nft_bids(payload: Any, config: Mapping[str, Any]) -> list[dict[str, Any]]:
    return _transform_nft_events(payload, config, "NFT_BID", "bidder")


def transform_nft_prices(payload: Any, config: Mapping[str, Any]) -> list[dict[str, Any]]:
    return _transform_nft_events(payload, config, "NFT_LISTING", "seller")


def transform_token_prices(payload: Any, config: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Derive SOL-denominated token prices from swaps.

    A swap leg is priced only when exactly one token was exchanged against native SOL,
    either bought with SOL (nativeInput/tokenOutputs) or sold for SOL (tokenInputs/nativeOutput).
    """
    rows: list[dict[str, Any]] = []
    for tx in _as_transactions(payload):
        if tx.get("type") != "SWAP":
            continue
        platform = tx.get("source")
        if not _allowed(platform, config.get("platforms")):
            continue
        for swap in _events(tx, "swap"):
            pairs = (
                (swap.get("nativeInput"), swap.get("tokenOutputs")),
                (swap.get("nativeOutput"), swap.get("tokenInputs")),
            )
            for native, legs in pairs:
                sol_amount = _native_amount(native)
                if not sol_amount or not isinstance(legs, list) or len(legs) != 1:
                    continue
                leg = legs[0]
                if not isinstance(leg, dict):
                    continue
                token = leg.get("mint")
                token_amount = _token_amount(leg)
                if not token or not token_amount:
                    continue
                if not _allowed(token, config.get("tokens")):
                    continue
                rows.append(
                    {
                        "token": token,
                        "price": sol_amount / token_amount,
                        "platform": platform,
                        "volume_24h": None,
                    }
                )
    return rows


def transform_token_borrowing(payload: Any, config: Mapping[str, Any]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for tx in _as_transactions(payload):
        for event in _events(tx, "lending"):
            platform = event.get("platform") or tx.get("source")
            token = event.get("token")
            if not _allowed(token, config.get("tokens")):
                continue
            if not _allowed(platform, config.get("platforms")):
                continue
            rows.append(
                {
                    "token": token,
                    "amount": event.get("amount"),
                    "platform": platform,
                    "interest_rate": event.get("interestRate", event.get("interest_rate")),
                    "available": event.get("available"),
                }
            )
    return rows


# Registry


@dataclass(frozen=True)
class Column:
    name: str
    sql_type: str
    nullable: bool = False

    def ddl(self) -> str:
        constraint = "" if self.nullable else " NOT NULL"
        return f"{quote_identifier(self.name)} {self.sql_type}{constraint}"


Transform = Callable[[Any, Mapping[str, Any]], list[dict[str, Any]]]


@dataclass(frozen=True)
class JobTypeSpec:
    job_type: JobType
    record_model: type[BaseModel]
    columns: tuple[Column, ...]
    natural_key: tuple[str, ...]
    mutable_fields: tuple[str, ...]
    transform_payload: Transform

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    def create_table_sql(self, table_name: str) -> str:
        definitions = [
            "id SERIAL PRIMARY KEY",
            *(column.ddl() for column in self.columns),
            "created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()",
            "updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()",
            f"UNIQUE ({', '.join(quote_identifier(name) for name in self.natural_key)})",
        ]
        body = ",\n    ".join(definitions)
        return f"CREATE TABLE IF NOT EXISTS {quote_table_name(table_name)} (\n    {body}\n)"

    def upsert_sql(self, table_name: str) -> str:
        columns = ", ".join(quote_identifier(name) for name in self.column_names)
        placeholders = ", ".join(f"${i}" for i in range(1, len(self.columns) + 1))
        conflict = ", ".join(quote_identifier(name) for name in self.natural_key)
        updates = ", ".join(
            f"{quote_identifier(name)} = EXCLUDED.{quote_identifier(name)}"
            for name in self.mutable_fields
        )
        return (
            f"INSERT INTO {quote_table_name(table_name)} ({columns})\n"
            f"VALUES ({placeholders})\n"
            f"ON CONFLICT ({conflict}) DO UPDATE SET {updates}, updated_at = NOW()"
        )

    def parse_records(self, entries: Iterable[Mapping[str, Any]]) -> list[BaseModel]:
        """Validate raw entries against the record model, dropping invalid ones."""
        records: list[BaseModel] = []
        for entry in entries:
            try:
                records.append(self.record_model.model_validate(entry))
            except ValidationError as e:
                logger.warning(
                    "Dropping invalid record",
                    job_type=self.job_type.value,
                    errors=e.error_count(),
                    detail=str(e),
                )
        return records

    def transform(self, payload: Any, config: Mapping[str, Any]) -> list[BaseModel]:
        return self.parse_records(self.transform_payload(payload, config))

    def to_row(self, record: BaseModel) -> tuple[Any, ...]:
        return tuple(getattr(record, name) for name in self.column_names)

    def to_rows(self, records: Sequence[BaseModel]) -> list[tuple[Any, ...]]:
        return [self.to_row(record) for record in records]


JOB_TYPE_SPECS: dict[JobType, JobTypeSpec] = {
    JobType.NFT_BIDS: JobTypeSpec(
        job_type=JobType.NFT_BIDS,
        record_model=NftBidRecord,
        columns=(
            Column("collection", "TEXT"),
            Column("mint", "TEXT"),
            Column("price", "NUMERIC"),
            Column("marketplace", "TEXT"),
            Column("bidder", "TEXT"),
            Column("expiry", "TIMESTAMPTZ", nullable=True),
        ),
        natural_key=("mint", "bidder"),
        mutable_fields=("price", "expiry"),
        transform_payload=transform_nft_bids,
    ),
    JobType.NFT_PRICES: JobTypeSpec(
        job_type=JobType.NFT_PRICES,
        record_model=NftPriceRecord,
        columns=(
            Column("collection", "TEXT"),
            Column("mint", "TEXT"),
            Column("price", "NUMERIC"),
            Column("marketplace", "TEXT"),
            Column("seller", "TEXT"),
        ),
        natural_key=("mint", "seller"),
        mutable_fields=("price",),
        transform_payload=transform_nft_prices,
    ),
    JobType.TOKEN_BORROWING: JobTypeSpec(
        job_type=JobType.TOKEN_BORROWING,
        record_model=TokenBorrowingRecord,
        columns=(
            Column("token", "TEXT"),
            Column("amount", "NUMERIC"),
            Column("platform", "TEXT"),
            Column("interest_rate", "NUMERIC"),
            Column("available", "BOOLEAN"),
        ),
        natural_key=("token", "platform"),
        mutable_fields=("amount", "interest_rate", "available"),
        transform_payload=transform_token_borrowing,
    ),
    JobType.TOKEN_PRICES: JobTypeSpec(
        job_type=JobType.TOKEN_PRICES,
        record_model=TokenPriceRecord,
        columns=(
            Column("token", "TEXT"),
            Column("price", "NUMERIC"),
            Column("platform", "TEXT"),
            Column("volume_24h", "NUMERIC", nullable=True),
        ),
        natural_key=("token", "platform"),
        mutable_fields=("price", "volume_24h"),
        transform_payload=transform_token_prices,
    ),
}


def get_job_type_spec(job_type: str) -> JobTypeSpec:
    """Look up the contract for a job type.

    Raises:
        ConfigurationError: if the type is not supported
    """
    try:
        return JOB_TYPE_SPECS[JobType(job_type)]
    except ValueError:
        raise ConfigurationError(f"Unsupported indexing type: {job_type}") from None
