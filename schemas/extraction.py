from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, List, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator


class Marker(Enum):
    """Placeholder states a model can report for a scalar field."""

    CONTINUATION = "CONTINUATION"  # not visible in this chunk, inherit from context
    MISSING = "MISSING"  # empty or not extracted


def coerce_field(value: Any) -> Union[Marker, str]:
    if isinstance(value, Marker):
        return value
    if value is None or isinstance(value, bool):
        return Marker.MISSING
    text = str(value).strip()
    if not text:
        return Marker.MISSING
    if text.upper() == Marker.CONTINUATION.value:
        return Marker.CONTINUATION
    return text


FieldValue = Annotated[Union[Marker, str], BeforeValidator(coerce_field)]


def is_concrete(value: Union[Marker, str, None]) -> bool:
    return isinstance(value, str) and value.strip() != ""


def concrete_or_none(value: Union[Marker, str, None]) -> Optional[str]:
    return value if is_concrete(value) else None


class RawChunk(BaseModel):
    content: str
    page_range: str
    sequence_number: int = Field(ge=1)


class ExtractedTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    date: FieldValue = Marker.MISSING
    credit_amount: FieldValue = Marker.MISSING
    debit_amount: FieldValue = Marker.MISSING
    description: FieldValue = Marker.MISSING
    balance: FieldValue = Marker.MISSING
    page_number: FieldValue = Marker.MISSING
    entity_name: FieldValue = Marker.MISSING

    @property
    def has_content(self) -> bool:
        return any(
            is_concrete(value) for value in (self.date, self.credit_amount, self.debit_amount, self.description)
        )

    def to_canonical(self, chunk_sequence: int) -> "CanonicalTransaction":
        return CanonicalTransaction(
            date=concrete_or_none(self.date),
            credit_amount=concrete_or_none(self.credit_amount),
            debit_amount=concrete_or_none(self.debit_amount),
            description=concrete_or_none(self.description),
            balance=concrete_or_none(self.balance),
            page_number=concrete_or_none(self.page_number),
            entity_name=concrete_or_none(self.entity_name),
            chunk_sequence=chunk_sequence,
        )


class ExtractedAccountStatement(BaseModel):
    """One account statement as seen inside a single chunk; may be partial."""

    model_config = ConfigDict(extra="ignore")

    bank_name: FieldValue = Marker.MISSING
    account_number: FieldValue = Marker.MISSING
    period_start: FieldValue = Marker.MISSING
    period_end: FieldValue = Marker.MISSING
    account_type: FieldValue = Marker.MISSING
    account_currency: FieldValue = Marker.MISSING
    starting_balance: FieldValue = Marker.MISSING
    ending_balance: FieldValue = Marker.MISSING
    transactions: List[ExtractedTransaction] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def flatten_period(cls, data: Any) -> Any:
        # Models emit the period nested as statement_period: {start_date, end_date}
        if isinstance(data, dict) and "statement_period" in data:
            data = dict(data)
            period = data.pop("statement_period") or {}
            if isinstance(period, dict):
                data.setdefault("period_start", period.get("start_date"))
                data.setdefault("period_end", period.get("end_date"))
        return data

    @field_validator("transactions", mode="before")
    @classmethod
    def drop_malformed_transactions(cls, value: Any) -> List[Any]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @field_validator("transactions")
    @classmethod
    def drop_empty_transactions(cls, value: List[ExtractedTransaction]) -> List[ExtractedTransaction]:
        # Models sometimes echo the blank row from the prompt template
        return [txn for txn in value if txn.has_content]


class ChunkResult(BaseModel):
    sequence_number: int
    page_range: str
    account_statements: List[ExtractedAccountStatement] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class CanonicalTransaction(BaseModel):
    date: Optional[str] = None
    credit_amount: Optional[str] = None
    debit_amount: Optional[str] = None
    description: Optional[str] = None
    balance: Optional[str] = None
    page_number: Optional[str] = None
    entity_name: Optional[str] = None
    # Sequence number of the chunk this transaction was read from
    chunk_sequence: int = 0


class CanonicalStatement(BaseModel):
    bank_name: Optional[str] = None
    account_number: str
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    account_type: Optional[str] = None
    account_currency: Optional[str] = None
    starting_balance: Optional[str] = None
    ending_balance: Optional[str] = None
    transactions: List[CanonicalTransaction] = Field(default_factory=list)


class StructuredData(BaseModel):
    account_statements: List[CanonicalStatement] = Field(default_factory=list)
