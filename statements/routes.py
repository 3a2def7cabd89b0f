from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, StreamingResponse

from schemas.processing import BankAffiliationUpdate, FacilityTermsUpdate, StructureRequest
from services.accounts import is_facility_account
from services.errors import PipelineError, StatementLocked, StatementNotFound, user_message_for
from services.persistence import StatementPersister
from services.pipeline import IngestionRequest, StatementPipeline
from services.store import StatementRecord, StatementStore
from services.validation import AutoValidator
from settings.deps import get_persister, get_pipeline, get_store, get_validator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/statements", tags=["statements"])
banks_router = APIRouter(prefix="/banks", tags=["banks"])


def _error(status_code: int, message: str, technical_error: Optional[str] = None) -> JSONResponse:
    content: Dict[str, Any] = {"success": False, "error": message}
    if technical_error:
        content["technical_error"] = technical_error
    return JSONResponse(status_code=status_code, content=content)


def _check_request(body: StructureRequest) -> Optional[JSONResponse]:
    if not body.statement_text or not body.statement_text.strip():
        return _error(400, "Statement text is required")
    if not body.submitting_user_id:
        return _error(401, "User authentication required")
    return None


def _ingestion_request(body: StructureRequest) -> IngestionRequest:
    return IngestionRequest(
        statement_text=body.statement_text or "",
        submitted_by=body.submitting_user_id or "",
        file_name=body.file_name,
        file_url=body.file_url,
    )


def _statement_view(record: StatementRecord) -> Dict[str, Any]:
    data = asdict(record)
    data.pop("raw_text", None)
    facility = is_facility_account(record.account_type, record.ending_balance)
    data["is_facility"] = facility
    data["account_category"] = "facility" if facility else "regular"
    return jsonable_encoder(data)


@router.post("/structure/stream")
async def structure_statement_stream(
    body: StructureRequest, pipeline: StatementPipeline = Depends(get_pipeline)
):
    """Chunked structuring with progress events as server-sent events."""
    invalid = _check_request(body)
    if invalid is not None:
        return invalid
    reporter = pipeline.start_streaming(_ingestion_request(body))
    return StreamingResponse(
        reporter.sse_lines(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/structure")
async def structure_statement(
    body: StructureRequest, pipeline: StatementPipeline = Depends(get_pipeline)
):
    invalid = _check_request(body)
    if invalid is not None:
        return invalid
    try:
        return await pipeline.run(_ingestion_request(body))
    except PipelineError as e:
        return _error(422, user_message_for(e), pipeline.technical_detail(e))
    except Exception as e:
        logger.error(f"Error structuring statement {body.file_name!r}: {e}", exc_info=True)
        return _error(500, user_message_for(e), pipeline.technical_detail(e))


@router.put("/{statement_id}/bank")
async def update_bank_affiliation(
    statement_id: int,
    body: BankAffiliationUpdate,
    persister: StatementPersister = Depends(get_persister),
):
    if not body.bank_name or not body.bank_name.strip():
        return _error(400, "Bank name is required")
    if not body.submitting_user_id:
        return _error(401, "User authentication required")
    try:
        record = await persister.update_bank_affiliation(statement_id, body.bank_name, body.submitting_user_id)
    except StatementNotFound:
        return _error(404, "Bank statement not found")
    except StatementLocked:
        return _error(409, "Bank statement is locked")
    except Exception as e:
        logger.error(f"Error updating bank affiliation of statement {statement_id}: {e}")
        return _error(500, "Failed to update bank affiliation")
    return {
        "success": True,
        "message": f'Bank affiliation updated to "{record.bank_name}"',
        "bank_id": record.bank_id,
        "bank_name": record.bank_name,
    }


@router.patch("/{statement_id}/facility")
async def update_facility_terms(
    statement_id: int,
    body: FacilityTermsUpdate,
    persister: StatementPersister = Depends(get_persister),
):
    try:
        record = await persister.update_facility_terms(
            statement_id, body.tenor, body.available_limit, body.interest_rate
        )
    except StatementNotFound:
        return _error(404, "Bank statement not found")
    except StatementLocked:
        return _error(409, "Bank statement is locked")
    return {"success": True, "statement": _statement_view(record)}


@router.post("/{statement_id}/validate")
async def validate_statement(statement_id: int, validator: AutoValidator = Depends(get_validator)):
    try:
        result = await validator.validate_statement(statement_id)
    except StatementNotFound:
        return _error(404, "Bank statement not found")
    return {"success": True, "validation": result.model_dump()}


@banks_router.get("/{bank_id}")
async def get_bank(bank_id: int, store: StatementStore = Depends(get_store)):
    async with store.unit_of_work() as repo:
        view = await repo.get_bank(bank_id)
    if view is None:
        return _error(404, "Bank not found")
    return {
        "success": True,
        "bank": {"id": view.bank.id, "name": view.bank.name},
        "statements": [_statement_view(s) for s in view.statements],
    }
