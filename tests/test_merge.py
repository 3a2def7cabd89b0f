import random

from conftest import statement_json, txn
from schemas.extraction import ChunkResult, ExtractedAccountStatement
from services.merge import UNKNOWN_BANK, merge_chunk_results


def _result(n, *statements):
    return ChunkResult(
        sequence_number=n,
        page_range=str(n),
        account_statements=[ExtractedAccountStatement.model_validate(s) for s in statements],
    )


def _two_chunk_document():
    first = statement_json(
        transactions=[
            txn("2024-01-02", credit="500", description="a"),
            txn("2024-01-03", credit="200", description="b"),
            txn("2024-01-04", debit="100", description="c"),
        ],
    )
    second = statement_json(
        bank_name="CONTINUATION",
        start="CONTINUATION",
        end="CONTINUATION",
        starting_balance="CONTINUATION",
        ending_balance="CONTINUATION",
        account_type="CONTINUATION",
        transactions=[
            txn("2024-01-10", debit="150", description="d"),
            txn("2024-01-11", debit="50", description="e"),
        ],
    )
    return [_result(1, first), _result(2, second)]


def test_two_chunks_merge_into_one_statement_in_chunk_order():
    merged = merge_chunk_results(_two_chunk_document())

    assert len(merged.account_statements) == 1
    statement = merged.account_statements[0]
    assert statement.account_number == "123"
    assert statement.bank_name == "Bank X"
    assert [t.description for t in statement.transactions] == ["a", "b", "c", "d", "e"]
    assert [t.chunk_sequence for t in statement.transactions] == [1, 1, 1, 2, 2]


def test_merge_is_idempotent_and_does_not_mutate_inputs():
    results = _two_chunk_document()
    before = [r.model_dump() for r in results]

    first = merge_chunk_results(results)
    second = merge_chunk_results(results)

    assert first == second
    assert len(second.account_statements[0].transactions) == 5
    assert [r.model_dump() for r in results] == before


def test_chunk_order_wins_over_input_order():
    results = [
        _result(n, statement_json(account_number="A", transactions=[txn("2024-01-%02d" % n, description=str(n))]))
        for n in range(1, 8)
    ]
    shuffled = results[:]
    random.Random(7).shuffle(shuffled)

    merged = merge_chunk_results(shuffled)

    assert [t.description for t in merged.account_statements[0].transactions] == [str(n) for n in range(1, 8)]


def test_continuation_or_empty_never_overwrites_concrete_values():
    first = statement_json(account_currency="USD", account_type="Current Account", ending_balance="900")
    second = statement_json(
        bank_name="",
        account_currency="CONTINUATION",
        account_type="",
        start="",
        end="CONTINUATION",
        starting_balance="CONTINUATION",
        ending_balance="",
    )
    statement = merge_chunk_results([_result(1, first), _result(2, second)]).account_statements[0]

    assert statement.account_currency == "USD"
    assert statement.account_type == "Current Account"
    assert statement.period_start == "2024-01-01"
    assert statement.period_end == "2024-01-31"
    assert statement.starting_balance == "1000.00"
    assert statement.ending_balance == "900"
    assert statement.bank_name == "Bank X"


def test_later_concrete_values_overwrite_and_zero_is_only_a_placeholder():
    first = statement_json(starting_balance="0", ending_balance="500")
    second = statement_json(starting_balance="1000", ending_balance="0.00", end="2024-02-29")
    statement = merge_chunk_results([_result(1, first), _result(2, second)]).account_statements[0]

    assert statement.starting_balance == "1000"
    assert statement.ending_balance == "500"
    assert statement.period_end == "2024-02-29"


def test_statements_without_account_number_are_dropped():
    merged = merge_chunk_results(
        [
            _result(
                1,
                statement_json(account_number="CONTINUATION"),
                statement_json(account_number="Unknown"),
                statement_json(account_number="7"),
            )
        ]
    )

    assert [s.account_number for s in merged.account_statements] == ["7"]


def test_blank_template_rows_are_not_kept_as_transactions():
    blank = {"date": "", "credit_amount": "", "debit_amount": "", "description": "", "balance": "", "page_number": ""}
    statement = statement_json(transactions=[blank, txn("2024-01-05", credit="500", description="a"), blank])

    merged = merge_chunk_results([_result(1, statement)])

    assert [t.description for t in merged.account_statements[0].transactions] == ["a"]


def test_known_bank_aliases_resolve_to_display_name():
    merged = merge_chunk_results([_result(1, statement_json(bank_name="CIB"))])

    assert merged.account_statements[0].bank_name == "Commercial International Bank"


def test_bank_name_falls_back_to_file_name_then_placeholder():
    no_bank = statement_json(bank_name="CONTINUATION")

    with_file = merge_chunk_results([_result(1, no_bank)], file_name="march.pdf")
    without_file = merge_chunk_results([_result(1, no_bank)])

    assert with_file.account_statements[0].bank_name == "march.pdf"
    assert without_file.account_statements[0].bank_name == UNKNOWN_BANK


def test_document_bank_name_applies_to_accounts_that_never_name_one():
    merged = merge_chunk_results(
        [
            _result(1, statement_json(account_number="1", bank_name="Bank X")),
            _result(2, statement_json(account_number="2", bank_name="unknown")),
        ]
    )

    assert {s.account_number: s.bank_name for s in merged.account_statements} == {"1": "Bank X", "2": "Bank X"}


def test_missing_period_takes_longest_observed_range():
    merged = merge_chunk_results(
        [
            _result(
                1,
                statement_json(account_number="1", start="2024-01-01", end="2024-03-31"),
                statement_json(account_number="2", start="2024-01-01", end="2024-01-31"),
                statement_json(account_number="3", start="", end="not a date"),
            )
        ]
    )
    periods = {s.account_number: (s.period_start, s.period_end) for s in merged.account_statements}

    assert periods["3"] == ("2024-01-01", "2024-03-31")
    assert periods["2"] == ("2024-01-01", "2024-01-31")
