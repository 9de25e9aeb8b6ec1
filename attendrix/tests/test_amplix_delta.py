from attendrix.features.amplix.delta import compute_delta, delta_for_action
from attendrix.models.attendance import CheckInResult, MarkAbsentResult
from attendrix.models.challenge import ChallengeEvaluation


def test_gain_without_deduction():
    assert compute_delta(gained=10, lost=0, challenge_deduction=0) == 10


def test_gain_with_challenge_deduction():
    assert compute_delta(gained=10, lost=0, challenge_deduction=3) == 7


def test_missing_inputs_count_as_zero():
    assert compute_delta(gained=None, lost=None, challenge_deduction=None) == 0
    assert compute_delta(lost=10) == -10


def test_mark_absent_with_forfeited_points():
    result = MarkAbsentResult(status="success", amplix_gained=2, amplix_lost=10)
    assert delta_for_action(result) == -8


def test_failed_evaluation_deducts_nothing():
    result = CheckInResult(status="success", amplix_gained=10)
    failed = ChallengeEvaluation(status="error", points_to_deduct=5)
    skipped = ChallengeEvaluation(status="skipped")
    assert delta_for_action(result, failed) == 10
    assert delta_for_action(result, skipped) == 10
    assert delta_for_action(result, ChallengeEvaluation(status="success", points_to_deduct=3)) == 7
