from __future__ import annotations

import re
from typing import Optional


class IngestionError(Exception):
    """Base class for statement ingestion failures."""


class EmptyModelResponse(IngestionError):
    pass


class ModelUnavailableError(IngestionError):
    """Every model in the fallback chain failed for one prompt."""


class JSONRepairError(IngestionError):
    def __init__(self, reason: str, raw_text: str, cleaned_text: str) -> None:
        super().__init__(reason)
        self.raw_text = raw_text
        self.cleaned_text = cleaned_text


class ChunkExtractionError(IngestionError):
    def __init__(
        self,
        message: str,
        sequence_number: int,
        raw_text: Optional[str] = None,
        cleaned_text: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.sequence_number = sequence_number
        self.raw_text = raw_text
        self.cleaned_text = cleaned_text


class PipelineError(IngestionError):
    """Fatal failure: the document as a whole cannot be ingested."""


class NoChunksError(PipelineError):
    def __init__(self) -> None:
        super().__init__("No valid chunks found in the statement text")


class NoStatementsError(PipelineError):
    def __init__(self) -> None:
        super().__init__("No account statements found in any of the processed chunks")


class StatementNotFound(IngestionError):
    def __init__(self, statement_id: int) -> None:
        super().__init__(f"Bank statement {statement_id} not found")
        self.statement_id = statement_id


class StatementLocked(IngestionError):
    def __init__(self, statement_id: int) -> None:
        super().__init__(f"Bank statement {statement_id} is locked")
        self.statement_id = statement_id


# Ordered: first matching pattern wins. Status codes match as whole tokens only
_USER_MESSAGES = (
    (r"QUOTA_EXCEEDED|\b429\b|rate limit", "API rate limit exceeded. Please wait a moment and try again."),
    (r"\bINTERNAL\b|\b500\b", "The AI service is temporarily unavailable. Please try again in a few minutes."),
    (
        r"INVALID_ARGUMENT|\b400\b",
        "The document format is not supported or the content is too complex to process.",
    ),
    (r"PERMISSION_DENIED|\b403\b", "API access is denied. Please check the server configuration."),
    (
        r"No valid chunks found",
        "The document format is not supported. Please ensure the document has proper page markers.",
    ),
    (r"No account statements found", "No valid account statements could be extracted from the document."),
)

DEFAULT_USER_MESSAGE = "An unexpected error occurred during chunked processing."


def user_message_for(exc: BaseException) -> str:
    text = str(exc)
    for pattern, message in _USER_MESSAGES:
        if re.search(pattern, text, re.IGNORECASE):
            return message
    return DEFAULT_USER_MESSAGE
