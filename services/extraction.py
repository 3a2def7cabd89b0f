from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from schemas.extraction import ChunkResult, ExtractedAccountStatement, RawChunk
from services.banks import known_bank_names
from services.debug_sink import DebugSink, LoggingDebugSink
from services.errors import ChunkExtractionError, JSONRepairError, ModelUnavailableError
from services.json_repair import normalize_payload, parse_model_json
from services.llm_client import StructuringClient
from services.retry import RetryPolicy

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = ("USD", "EUR", "GBP", "EGP", "CNY", "CAD", "AUD", "JPY")

STRUCTURING_PROMPT = """
Given a CHUNK of raw text content from a bank statement, extract and structure the data into JSON.

IMPORTANT CONTEXT:
- This is chunk {chunk_number} of a larger bank statement document (pages {pages})
- The document may span multiple chunks/pages
- Account statements may continue across chunks
- Extract only the data visible in this chunk

Return exactly this shape:

{{
  "chunk_number": {chunk_number},
  "pages": "{pages}",
  "account_statements": [
    {{
      "bank_name": "",
      "account_number": "",
      "statement_period": {{"start_date": "", "end_date": ""}},
      "account_type": "",
      "account_currency": "",
      "starting_balance": "",
      "ending_balance": "",
      "transactions": [
        {{
          "date": "",
          "credit_amount": "",
          "debit_amount": "",
          "description": "",
          "balance": "",
          "page_number": "",
          "entity_name": ""
        }}
      ]
    }}
  ]
}}

Guidelines:
- Extract all transactions visible in this chunk, in the order they appear in the statement
- If account information (bank_name, account_number, etc.) is not visible in this chunk but transactions are present, use "CONTINUATION" for the missing fields
- account_number is the primary key: every transaction under the same account_number belongs to the same account statement
- If starting/ending balances are not visible in this chunk, use "CONTINUATION"
- Dates must be ISO formatted (YYYY-MM-DD)
- Credit and debit amounts are numbers without currency symbols or thousands separators; leave a field empty if it does not apply
- page_number is the exact PDF page number when possible
- account_currency is one of: {currencies}
- account_type is one of: Current Account (the client's own money) or Facility Account (the bank's money)

BANK NAME SELECTION:
Match the bank name to one of these banks when possible, using the EXACT name from the list:
{banks}
If the bank is not in the list, extract the name exactly as it appears in the document.

Return ONLY valid JSON with no additional text, explanations, or code blocks.
""".strip()

ChunkCallback = Callable[..., Awaitable[None]]


class StatementExtractor:
    """Turns raw chunks into ChunkResults through the structuring model chain."""

    def __init__(
        self,
        client: StructuringClient,
        models: Sequence[str],
        retry_policy: Optional[RetryPolicy] = None,
        debug_sink: Optional[DebugSink] = None,
        bank_names: Optional[List[str]] = None,
        model_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not models:
            raise ValueError("At least one structuring model is required")
        self.client = client
        self.models = list(models)
        self.retry_policy = retry_policy or RetryPolicy()
        self.debug_sink = debug_sink or LoggingDebugSink()
        self.bank_names = bank_names if bank_names is not None else known_bank_names()
        self.model_options = model_options or {}

    def build_prompt(self, chunk: RawChunk) -> str:
        header = STRUCTURING_PROMPT.format(
            chunk_number=chunk.sequence_number,
            pages=chunk.page_range,
            currencies=", ".join(SUPPORTED_CURRENCIES),
            banks="\n".join(f"- {name}" for name in self.bank_names),
        )
        return (
            f"{header}\n\nHere is chunk {chunk.sequence_number} of the bank statement text to parse:\n"
            f"{chunk.content}"
        )

    async def call_model(self, prompt: str) -> str:
        """Try each model in order, each with the full retry budget."""
        last_error: Optional[Exception] = None
        for model_id in self.models:
            logger.info(f"Trying model: {model_id}")
            try:
                return await self.retry_policy.run(
                    lambda: self.client.generate(model_id, prompt, self.model_options),
                    label=f"model {model_id}",
                )
            except Exception as e:
                last_error = e
                logger.error(f"Model {model_id} failed: {e}")
        raise ModelUnavailableError(f"All models failed: {last_error}") from last_error

    def _to_statements(self, payload: Dict[str, Any], sequence_number: int) -> List[ExtractedAccountStatement]:
        statements: List[ExtractedAccountStatement] = []
        for index, item in enumerate(normalize_payload(payload)["account_statements"]):
            if not isinstance(item, dict):
                logger.warning(f"Chunk {sequence_number}: ignoring non-object statement #{index}")
                continue
            try:
                statements.append(ExtractedAccountStatement.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Chunk {sequence_number}: ignoring invalid statement #{index}: {e}")
        return statements

    async def extract_chunk(self, chunk: RawChunk, file_name: Optional[str] = None) -> ChunkResult:
        logger.info(f"Processing chunk {chunk.sequence_number} (pages {chunk.page_range})")
        try:
            response_text = await self.call_model(self.build_prompt(chunk))
        except ModelUnavailableError as e:
            raise ChunkExtractionError(str(e), chunk.sequence_number) from e

        try:
            payload = parse_model_json(response_text)
        except JSONRepairError as e:
            self.debug_sink.record(
                response_text,
                {
                    "file_name": file_name,
                    "sequence_number": chunk.sequence_number,
                    "page_range": chunk.page_range,
                    "error": str(e),
                    "cleaned_text": e.cleaned_text,
                },
            )
            raise ChunkExtractionError(
                f"Failed to parse JSON from chunk {chunk.sequence_number}. Parse error: {e}",
                chunk.sequence_number,
                raw_text=e.raw_text,
                cleaned_text=e.cleaned_text,
            ) from e

        statements = self._to_statements(payload, chunk.sequence_number)
        logger.info(f"Chunk {chunk.sequence_number} processed: {len(statements)} account statements found")
        return ChunkResult(
            sequence_number=chunk.sequence_number,
            page_range=chunk.page_range,
            account_statements=statements,
        )

    async def extract_all(
        self,
        chunks: Sequence[RawChunk],
        file_name: Optional[str] = None,
        concurrency: int = 1,
        delay: float = 0.0,
        on_start: Optional[ChunkCallback] = None,
        on_complete: Optional[ChunkCallback] = None,
        on_error: Optional[ChunkCallback] = None,
    ) -> List[ChunkResult]:
        """
        Extract every chunk; a failed chunk contributes an empty ChunkResult.
        Results are ordered by sequence number whatever the completion order.
        """
        semaphore = asyncio.Semaphore(max(1, concurrency))
        sleep = self.retry_policy.sleep

        async def _one(position: int, chunk: RawChunk) -> ChunkResult:
            async with semaphore:
                if on_start is not None:
                    await on_start(chunk)
                try:
                    result = await self.extract_chunk(chunk, file_name=file_name)
                except Exception as e:
                    logger.error(f"Error processing chunk {chunk.sequence_number}: {e}")
                    if on_error is not None:
                        await on_error(chunk, e)
                    result = ChunkResult(
                        sequence_number=chunk.sequence_number,
                        page_range=chunk.page_range,
                        account_statements=[],
                        error=str(e),
                    )
                else:
                    if on_complete is not None:
                        await on_complete(chunk, result)
                # Rate-limit spacing between calls
                if delay > 0 and len(chunks) > 1 and position < len(chunks) - 1:
                    await sleep(delay)
                return result

        if concurrency <= 1:
            results = [await _one(i, chunk) for i, chunk in enumerate(chunks)]
        else:
            results = list(await asyncio.gather(*(_one(i, chunk) for i, chunk in enumerate(chunks))))
        return sorted(results, key=lambda r: r.sequence_number)
