from __future__ import annotations

from enum import Enum
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ProcessingAction(str, Enum):
    CREATE_NEW = "CREATE_NEW"
    ADD_TO_EXISTING_BANK = "ADD_TO_EXISTING_BANK"
    SKIP_DUPLICATE = "SKIP_DUPLICATE"
    MERGE_DIFFERENT_PERIOD = "MERGE_DIFFERENT_PERIOD"


class ProcessingResult(BaseModel):
    action: ProcessingAction
    bank_statement_id: int
    transaction_count: int
    message: str


class StatementOutcome(BaseModel):
    """Result of persisting one merged statement; exactly one of result/error is set."""

    account_number: str
    bank_name: Optional[str] = None
    result: Optional[ProcessingResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result is not None


class ValidationResult(BaseModel):
    status: str  # "passed" | "failed"
    calculated_balance: str
    discrepancy: str
    total_credits: str
    total_debits: str
    notes: str

    @property
    def passed(self) -> bool:
        return self.status == "passed"


class SavedStatementSummary(BaseModel):
    id: int
    file_name: str
    bank_name: str
    account_number: str
    transaction_count: int


class ProcessingSummary(BaseModel):
    total_processed: int = 0
    duplicates_skipped: int = 0
    merged: int = 0
    new_statements: int = 0
    chunks_processed: int = 0
    failed: int = 0


class StructureRequest(BaseModel):
    """Body of the structuring endpoints; camelCase keys are accepted too."""

    model_config = ConfigDict(populate_by_name=True)

    statement_text: Optional[str] = Field(default=None, alias="statementText")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_url: Optional[str] = Field(default=None, alias="fileUrl")
    submitting_user_id: Optional[str] = Field(default=None, alias="submittingUserId")


class BankAffiliationUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bank_name: Optional[str] = Field(default=None, alias="bankName")
    submitting_user_id: Optional[str] = Field(default=None, alias="submittingUserId")


class FacilityTermsUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenor: Optional[str] = None
    available_limit: Optional[Decimal] = Field(default=None, alias="availableLimit")
    interest_rate: Optional[str] = Field(default=None, alias="interestRate")
