import asyncio

import pytest

from conftest import FakeStructuringClient, chunk_number_of, model_response, statement_json, txn
from schemas.extraction import Marker, RawChunk
from services.errors import ChunkExtractionError
from services.extraction import StatementExtractor


def _chunk(n: int, content: str = "rows") -> RawChunk:
    return RawChunk(content=content, page_range=str(n), sequence_number=n)


def _extractor(client, retry_policy, debug_sink, models=("primary", "fallback")) -> StatementExtractor:
    return StatementExtractor(client, list(models), retry_policy=retry_policy, debug_sink=debug_sink, bank_names=["Bank X"])


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_backoff(retry_policy, sleeper, debug_sink):
    client = FakeStructuringClient(
        script=[RuntimeError("429 rate limit"), RuntimeError("500 INTERNAL"), model_response(statement_json())]
    )
    result = await _extractor(client, retry_policy, debug_sink).extract_chunk(_chunk(1))

    assert [model for model, _ in client.calls] == ["primary", "primary", "primary"]
    assert sleeper.delays == [1.0, 2.0]
    assert result.account_statements[0].account_number == "123"


@pytest.mark.asyncio
async def test_falls_back_to_next_model_after_exhausting_retries(retry_policy, debug_sink):
    failures = [RuntimeError("boom")] * 3
    client = FakeStructuringClient(script=failures + [model_response(statement_json(account_number="9"))])
    result = await _extractor(client, retry_policy, debug_sink).extract_chunk(_chunk(1))

    assert [model for model, _ in client.calls] == ["primary"] * 3 + ["fallback"]
    assert result.account_statements[0].account_number == "9"


@pytest.mark.asyncio
async def test_all_models_failing_raises_chunk_error(retry_policy, debug_sink):
    client = FakeStructuringClient(responder=lambda model, prompt: RuntimeError("PERMISSION_DENIED"))
    with pytest.raises(ChunkExtractionError) as info:
        await _extractor(client, retry_policy, debug_sink).extract_chunk(_chunk(4))

    assert info.value.sequence_number == 4
    assert len(client.calls) == 6


@pytest.mark.asyncio
async def test_unparseable_response_goes_to_debug_sink(retry_policy, debug_sink):
    client = FakeStructuringClient(script=['{"account_statements": [{"account_number": "1", "date": "20'])
    with pytest.raises(ChunkExtractionError) as info:
        await _extractor(client, retry_policy, debug_sink).extract_chunk(_chunk(2), file_name="jan.pdf")

    assert "Failed to parse JSON from chunk 2" in str(info.value)
    assert len(debug_sink.records) == 1
    raw, context = debug_sink.records[0]
    assert raw.startswith('{"account_statements"')
    assert context["sequence_number"] == 2
    assert context["file_name"] == "jan.pdf"


@pytest.mark.asyncio
async def test_continuation_and_empty_fields_become_markers(retry_policy, debug_sink):
    payload = statement_json(bank_name="CONTINUATION", starting_balance="", transactions=[txn("2024-01-02", credit="5")])
    client = FakeStructuringClient(script=[model_response(payload)])
    result = await _extractor(client, retry_policy, debug_sink).extract_chunk(_chunk(1))

    statement = result.account_statements[0]
    assert statement.bank_name is Marker.CONTINUATION
    assert statement.starting_balance is Marker.MISSING
    assert statement.period_start == "2024-01-01"
    assert statement.transactions[0].debit_amount is Marker.MISSING


def test_prompt_carries_chunk_context(retry_policy, debug_sink):
    extractor = _extractor(FakeStructuringClient(), retry_policy, debug_sink)
    prompt = extractor.build_prompt(RawChunk(content="ROW DATA", page_range="3-4", sequence_number=2))

    assert "chunk 2" in prompt
    assert "pages 3-4" in prompt
    assert "- Bank X" in prompt
    assert prompt.endswith("ROW DATA")


@pytest.mark.asyncio
async def test_failed_chunk_yields_empty_result_and_others_continue(retry_policy, debug_sink):
    def responder(model, prompt):
        if chunk_number_of(prompt) == 2:
            return RuntimeError("INVALID_ARGUMENT")
        return model_response(statement_json(transactions=[txn("2024-01-0%d" % chunk_number_of(prompt), credit="1")]))

    extractor = _extractor(FakeStructuringClient(responder=responder), retry_policy, debug_sink)
    errors = []

    async def on_error(chunk, exc):
        errors.append(chunk.sequence_number)

    results = await extractor.extract_all([_chunk(1), _chunk(2), _chunk(3)], on_error=on_error)

    assert [r.sequence_number for r in results] == [1, 2, 3]
    assert results[1].failed and results[1].account_statements == []
    assert not results[0].failed and not results[2].failed
    assert errors == [2]


@pytest.mark.asyncio
async def test_results_sorted_by_sequence_whatever_completion_order(retry_policy, debug_sink):
    class SlowFirstClient(FakeStructuringClient):
        async def generate(self, model_id, prompt, options=None):
            n = chunk_number_of(prompt)
            # Earlier chunks finish later
            for _ in range(10 - n):
                await asyncio.sleep(0)
            return model_response(statement_json(account_number=str(n)))

    extractor = _extractor(SlowFirstClient(), retry_policy, debug_sink)
    completed = []

    async def on_complete(chunk, result):
        completed.append(chunk.sequence_number)

    results = await extractor.extract_all([_chunk(n) for n in (1, 2, 3, 4)], concurrency=4, on_complete=on_complete)

    assert completed != [1, 2, 3, 4]
    assert [r.sequence_number for r in results] == [1, 2, 3, 4]
    assert [r.account_statements[0].account_number for r in results] == ["1", "2", "3", "4"]


@pytest.mark.asyncio
async def test_sequential_extraction_spaces_calls(retry_policy, sleeper, debug_sink):
    client = FakeStructuringClient(responder=lambda model, prompt: model_response())
    await _extractor(client, retry_policy, debug_sink).extract_all([_chunk(1), _chunk(2), _chunk(3)], delay=0.5)

    assert sleeper.delays == [0.5, 0.5]
