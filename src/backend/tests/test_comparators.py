from __future__ import annotations

import pytest

from agent_consensus.tools.comparators import (
    COMPARATORS,
    extract_verdict,
    get_comparator,
    normalize_text,
    sequence_ratio,
    token_jaccard,
    verdict_agreement,
)


def test_normalize_unwraps_fence_and_collapses_whitespace() -> None:
    assert normalize_text("```text\nYes,\n  it   IS valid\n```") == "yes, it is valid"


@pytest.mark.parametrize("name", sorted(COMPARATORS))
def test_identical_answers_fully_agree(name) -> None:
    compare = get_comparator(name)
    answer = "Yes, the transaction is valid because Bob has funds."
    assert compare(answer, answer) == pytest.approx(1.0)


@pytest.mark.parametrize("name", sorted(COMPARATORS))
def test_comparators_are_symmetric_and_bounded(name) -> None:
    compare = get_comparator(name)
    a = "No. The signature does not match the sender."
    b = "Yes, it is valid and the signature matches."
    assert compare(a, b) == pytest.approx(compare(b, a))
    assert 0.0 <= compare(a, b) <= 1.0


def test_token_jaccard_ignores_case_and_punctuation() -> None:
    assert token_jaccard("The transaction is VALID!", "the transaction is valid.") == 1.0


def test_token_jaccard_uses_word_sets_for_short_answers() -> None:
    assert token_jaccard("yes", "Yes!") == 1.0
    assert token_jaccard("yes", "no") == 0.0


def test_token_jaccard_empty_answer_scores_zero() -> None:
    assert token_jaccard("", "anything at all") == 0.0


def test_sequence_ratio_orders_similarity() -> None:
    close = sequence_ratio("the answer is 42", "the answer is 43")
    far = sequence_ratio("the answer is 42", "completely unrelated text")
    assert close > far


@pytest.mark.parametrize("text, expected", [
    ("Yes, it is valid.", True),
    ("The transaction is not valid.", False),
    ("No. Although the format is correct, the balance is short.", False),
    ("Valid. But only if the nonce is fresh, which it is not.", True),
    ("Yes, though not always.", True),
    ("It depends on the ledger state.", None),
])
def test_extract_verdict(text, expected) -> None:
    assert extract_verdict(text) is expected


def test_verdict_agreement_is_neutral_without_a_verdict() -> None:
    assert verdict_agreement("Yes.", "It depends.") == 0.5
    assert verdict_agreement("Yes.", "Correct, it is.") == 1.0
    assert verdict_agreement("Yes.", "No.") == 0.0


def test_unknown_comparator_is_a_config_error() -> None:
    with pytest.raises(ValueError, match="token_jaccard"):
        get_comparator("cosine")
