from __future__ import annotations

from fastapi import Request

from services.persistence import StatementPersister
from services.pipeline import StatementPipeline
from services.store import StatementStore
from services.validation import AutoValidator


def get_pipeline(request: Request) -> StatementPipeline:
	"""
	The pipeline is built once at startup and kept on app.state.
	Tests swap it by assigning app.state.pipeline.
	"""
	return request.app.state.pipeline


def get_store(request: Request) -> StatementStore:
	return request.app.state.store


def get_persister(request: Request) -> StatementPersister:
	return get_pipeline(request).persister


def get_validator(request: Request) -> AutoValidator:
	return get_pipeline(request).validator
