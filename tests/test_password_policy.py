import pytest

from rollt.service.password_policy import (
    POLICY_MESSAGE,
    STRENGTH_LABELS,
    meets_policy,
    score_password,
)


@pytest.mark.parametrize(
    "password",
    ["Abcdef1!", "Sup3r$ecretPass", "x#Y9aaaa", "Pass_word1"],
)
def test_policy_accepts_complete_passwords(password):
    assert meets_policy(password)


@pytest.mark.parametrize(
    "password",
    [
        "",
        "Ab1!",  # too short
        "abcdefg1!",  # no uppercase
        "ABCDEFG1!",  # no lowercase
        "Abcdefgh!",  # no digit
        "Abcdefgh1",  # no symbol
        "Abcdefg1~",  # symbol outside the accepted set
    ],
)
def test_policy_rejects_incomplete_passwords(password):
    assert not meets_policy(password)


def test_policy_handles_none():
    assert not meets_policy(None)


def test_policy_message_mentions_length():
    assert "8 characters" in POLICY_MESSAGE


def test_score_empty_password_is_very_weak():
    strength = score_password("")
    assert strength.score == 0
    assert strength.label == "very weak"
    assert strength.valid is False


def test_score_caps_at_four():
    strength = score_password("Very$trongPassword123")
    assert strength.score == 4
    assert strength.label == STRENGTH_LABELS[4]
    assert strength.valid


def test_score_counts_each_criterion():
    # length >= 8 and a digit
    assert score_password("abcdefg1").score == 2
    # digit only
    assert score_password("1").score == 1
    # mixed case and symbol, short
    assert score_password("aB!").score == 2


def test_score_is_advisory_and_independent_of_policy():
    # Long lowercase with digits scores well but fails the policy
    password = "abcdefghijk12"
    assert score_password(password).valid
    assert not meets_policy(password)
