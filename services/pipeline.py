from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

from schemas.extraction import ChunkResult, RawChunk, StructuredData
from schemas.processing import (
    ProcessingAction,
    ProcessingSummary,
    SavedStatementSummary,
    StatementOutcome,
)
from services.chunking import single_chunk, split_into_chunks
from services.classification import ClassificationDispatcher, build_dispatcher
from services.debug_sink import DebugSink, build_debug_sink
from services.errors import DEFAULT_USER_MESSAGE, NoChunksError, NoStatementsError, user_message_for
from services.extraction import StatementExtractor
from services.llm_client import OpenAIStructuringClient, StructuringClient
from services.merge import merge_chunk_results
from services.persistence import StatementPersister
from services.progress import ProgressReporter
from services.retry import RetryPolicy
from services.store import StatementStore
from services.validation import AutoValidator
from settings.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class IngestionRequest:
    statement_text: str
    submitted_by: str
    file_name: Optional[str] = None
    file_url: Optional[str] = None


def _chunk_summary(result: ChunkResult) -> Dict[str, Any]:
    return {
        "sequence_number": result.sequence_number,
        "page_range": result.page_range,
        "account_statements_found": len(result.account_statements),
        "transactions_found": sum(len(s.transactions) for s in result.account_statements),
        "error": result.error,
    }


def summarize(outcomes: List[StatementOutcome], chunks_processed: int) -> ProcessingSummary:
    summary = ProcessingSummary(total_processed=len(outcomes), chunks_processed=chunks_processed)
    for outcome in outcomes:
        if outcome.result is None:
            summary.failed += 1
            continue
        action = outcome.result.action
        if action == ProcessingAction.SKIP_DUPLICATE:
            summary.duplicates_skipped += 1
        elif action == ProcessingAction.MERGE_DIFFERENT_PERIOD:
            summary.merged += 1
        else:
            summary.new_statements += 1
    return summary


class StatementPipeline:
    """
    split -> extract -> merge -> persist -> validate -> summarize -> classify

    Stage failures for a single chunk or statement are reported and absorbed;
    only an empty document or an empty merge fails the run.
    """

    def __init__(
        self,
        extractor: StatementExtractor,
        persister: StatementPersister,
        validator: AutoValidator,
        dispatcher: ClassificationDispatcher,
        chunk_delay: float = 0.0,
        chunk_concurrency: int = 1,
        expose_technical_errors: bool = True,
    ) -> None:
        self.extractor = extractor
        self.persister = persister
        self.validator = validator
        self.dispatcher = dispatcher
        self.chunk_delay = chunk_delay
        self.chunk_concurrency = chunk_concurrency
        self.expose_technical_errors = expose_technical_errors
        self._tasks: Set[asyncio.Task] = set()

    def technical_detail(self, exc: BaseException) -> Optional[str]:
        return str(exc) if self.expose_technical_errors else None

    async def run_streaming(self, request: IngestionRequest, reporter: ProgressReporter) -> None:
        """Run the chunked pipeline, always leaving the reporter closed."""
        try:
            payload = await self._execute(request, reporter, chunked=True)
            reporter.complete(**payload)
        except Exception as e:
            logger.error(f"Statement processing failed for {request.file_name!r}: {e}", exc_info=True)
            reporter.fail(user_message_for(e), self.technical_detail(e))
        finally:
            if not reporter.closed:
                reporter.fail(DEFAULT_USER_MESSAGE)

    def start_streaming(self, request: IngestionRequest) -> ProgressReporter:
        """
        Run the pipeline as a detached task and hand back its event stream.
        The task keeps going if the consumer goes away.
        """
        reporter = ProgressReporter()
        task = asyncio.create_task(self.run_streaming(request, reporter))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return reporter

    async def run(self, request: IngestionRequest, chunked: bool = False) -> Dict[str, Any]:
        """Non-streaming variant; raises PipelineError on a fatal failure."""
        payload = await self._execute(request, ProgressReporter(), chunked=chunked)
        return {"success": True, **payload}

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _extract(
        self, chunks: List[RawChunk], file_name: Optional[str], reporter: ProgressReporter
    ) -> List[ChunkResult]:
        total = len(chunks)

        async def on_start(chunk: RawChunk) -> None:
            reporter.emit(
                "chunk_start",
                chunk_number=chunk.sequence_number,
                page_range=chunk.page_range,
                total_chunks=total,
                message=f"Processing chunk {chunk.sequence_number} of {total} (pages {chunk.page_range})",
            )

        async def on_complete(chunk: RawChunk, result: ChunkResult) -> None:
            reporter.emit("chunk_complete", chunk_number=chunk.sequence_number, **_chunk_summary(result))

        async def on_error(chunk: RawChunk, exc: Exception) -> None:
            reporter.emit(
                "chunk_error",
                chunk_number=chunk.sequence_number,
                page_range=chunk.page_range,
                error=user_message_for(exc),
                technical_error=self.technical_detail(exc),
            )

        return await self.extractor.extract_all(
            chunks,
            file_name=file_name,
            concurrency=self.chunk_concurrency,
            delay=self.chunk_delay,
            on_start=on_start,
            on_complete=on_complete,
            on_error=on_error,
        )

    async def _persist(
        self, structured: StructuredData, request: IngestionRequest, reporter: ProgressReporter
    ) -> List[StatementOutcome]:
        outcomes: List[StatementOutcome] = []
        total = len(structured.account_statements)
        for index, statement in enumerate(structured.account_statements, start=1):
            reporter.emit(
                "statement_start",
                account_number=statement.account_number,
                bank_name=statement.bank_name,
                index=index,
                total=total,
            )
            [outcome] = await self.persister.persist_many(
                [statement], request.submitted_by, request.file_name, request.file_url, request.statement_text
            )
            outcomes.append(outcome)
            if outcome.result is None:
                reporter.emit(
                    "statement_error",
                    account_number=statement.account_number,
                    bank_name=statement.bank_name,
                    error=outcome.error,
                )
                continue
            event = (
                "statement_skip"
                if outcome.result.action == ProcessingAction.SKIP_DUPLICATE
                else "statement_complete"
            )
            reporter.emit(
                event,
                account_number=statement.account_number,
                bank_name=statement.bank_name,
                **outcome.result.model_dump(mode="json"),
            )
        return outcomes

    async def _validate(self, statement_ids: List[int], reporter: ProgressReporter) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for statement_id in statement_ids:
            reporter.emit("validation_start", bank_statement_id=statement_id)
            try:
                result = await self.validator.validate_statement(statement_id)
            except Exception as e:
                # Statement stays unvalidated; the batch carries on
                logger.error(f"Validation error for statement {statement_id}: {e}")
                reporter.emit("validation_error", bank_statement_id=statement_id, error=str(e))
                results.append({"bank_statement_id": statement_id, "error": str(e)})
                continue
            reporter.emit("validation_complete", bank_statement_id=statement_id, **result.model_dump())
            results.append({"bank_statement_id": statement_id, **result.model_dump()})
        return results

    async def _classify(self, statement_ids: List[int], reporter: ProgressReporter) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for statement_id in statement_ids:
            reporter.emit("classification_start", bank_statement_id=statement_id)
            try:
                job_id = await self.dispatcher.submit(statement_id)
            except Exception as e:
                logger.error(f"Could not trigger classification for statement {statement_id}: {e}")
                reporter.emit("classification_error", bank_statement_id=statement_id, error=str(e))
                results.append({"bank_statement_id": statement_id, "success": False, "error": str(e)})
                continue
            reporter.emit("classification_triggered", bank_statement_id=statement_id, job_id=job_id)
            results.append({"bank_statement_id": statement_id, "success": True, "job_id": job_id})
        return results

    async def _execute(self, request: IngestionRequest, reporter: ProgressReporter, chunked: bool) -> Dict[str, Any]:
        file_name = request.file_name
        reporter.emit("status", message="Splitting statement into chunks")
        chunks = split_into_chunks(request.statement_text) if chunked else [single_chunk(request.statement_text)]
        chunks = [chunk for chunk in chunks if chunk.content.strip()]
        if not chunks:
            raise NoChunksError()
        reporter.emit(
            "chunks_prepared",
            total_chunks=len(chunks),
            chunks=[
                {"sequence_number": c.sequence_number, "page_range": c.page_range, "length": len(c.content)}
                for c in chunks
            ],
        )

        chunk_results = await self._extract(chunks, file_name, reporter)
        failed_chunks = sum(1 for r in chunk_results if r.failed)
        logger.info(f"Extraction finished: {len(chunk_results) - failed_chunks}/{len(chunk_results)} chunks succeeded")

        structured = merge_chunk_results(chunk_results, file_name=file_name)
        total_transactions = sum(len(s.transactions) for s in structured.account_statements)
        reporter.emit(
            "merge_complete",
            total_accounts=len(structured.account_statements),
            total_transactions=total_transactions,
        )
        if not structured.account_statements:
            raise NoStatementsError()

        outcomes = await self._persist(structured, request, reporter)

        saved: List[SavedStatementSummary] = []
        touched: List[int] = []
        for outcome in outcomes:
            result = outcome.result
            if result is None or result.action == ProcessingAction.SKIP_DUPLICATE:
                continue
            if result.bank_statement_id in touched:
                continue
            touched.append(result.bank_statement_id)
            saved.append(
                SavedStatementSummary(
                    id=result.bank_statement_id,
                    file_name=file_name or "",
                    bank_name=outcome.bank_name or "",
                    account_number=outcome.account_number,
                    transaction_count=result.transaction_count,
                )
            )

        validation_results = await self._validate(touched, reporter)

        summary = summarize(outcomes, chunks_processed=len(chunk_results))
        reporter.emit("processing_summary", **summary.model_dump())

        classification_results = await self._classify(touched, reporter)

        return {
            "file_name": file_name,
            "chunks_processed": len(chunk_results),
            "chunk_results": [_chunk_summary(r) for r in chunk_results],
            "structured_data": structured.model_dump(mode="json"),
            "saved_statements": [s.model_dump() for s in saved],
            "validation_results": validation_results,
            "classification_results": classification_results,
            "processing_results": [o.model_dump(mode="json") for o in outcomes],
            "summary": summary.model_dump(),
        }


def build_pipeline(
    settings: Settings,
    store: StatementStore,
    client: Optional[StructuringClient] = None,
    dispatcher: Optional[ClassificationDispatcher] = None,
    debug_sink: Optional[DebugSink] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> StatementPipeline:
    retry_policy = retry_policy or RetryPolicy(
        max_attempts=settings.EXTRACTION_MAX_ATTEMPTS, base_delay=settings.EXTRACTION_BASE_DELAY_SECONDS
    )
    extractor = StatementExtractor(
        client or OpenAIStructuringClient.from_settings(settings),
        settings.STRUCTURING_MODELS,
        retry_policy=retry_policy,
        debug_sink=debug_sink or build_debug_sink(settings.DEBUG_RESPONSES_DIR),
    )
    return StatementPipeline(
        extractor=extractor,
        persister=StatementPersister(store),
        validator=AutoValidator(store, Decimal(settings.VALIDATION_TOLERANCE)),
        dispatcher=dispatcher or build_dispatcher(settings, store),
        chunk_delay=settings.CHUNK_DELAY_SECONDS,
        chunk_concurrency=settings.CHUNK_CONCURRENCY,
        expose_technical_errors=not settings.is_production,
    )
