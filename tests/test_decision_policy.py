"""Tests for the score-to-outcome decision policy."""

import pytest

from credence.config import Config
from credence.matching import Mismatch, MismatchReason
from credence.verification import DecisionPolicy, VerificationStatus

S = VerificationStatus

INSTITUTION_MISMATCH = Mismatch("institution", "IIT Delhi", "IIT Bombay", MismatchReason.INSTITUTION_MISMATCH)
YEAR_MISMATCH = Mismatch("end_year", 2022, 2023, MismatchReason.YEAR_OUT_OF_RANGE)


@pytest.fixture
def policy():
    return DecisionPolicy()


class TestDecide:
    def test_high_score_approves(self, policy):
        decision = policy.decide(96, (), total_attempts=1)
        assert decision.status is S.APPROVED
        assert decision.reason == "SCORE_ABOVE_THRESHOLD"

    def test_threshold_is_inclusive(self, policy):
        assert policy.decide(85, (), 1).status is S.APPROVED
        assert policy.decide(84, (), 1).status is S.MANUAL_REVIEW

    def test_low_score_rejects(self, policy):
        decision = policy.decide(49, (), 1)
        assert decision.status is S.REJECTED
        assert decision.reason == "SCORE_BELOW_FLOOR"

    def test_floor_is_exclusive(self, policy):
        assert policy.decide(50, (), 1).status is S.MANUAL_REVIEW

    def test_residual_band(self, policy):
        assert policy.decide(70, (YEAR_MISMATCH,), 1).reason == "RESIDUAL_BAND"

    def test_non_critical_mismatch_does_not_block_approval(self, policy):
        assert policy.decide(88, (YEAR_MISMATCH,), 1).status is S.APPROVED

    def test_critical_mismatch_blocks_approval(self, policy):
        decision = policy.decide(90, (INSTITUTION_MISMATCH,), 1)
        assert decision.status is S.MANUAL_REVIEW
        assert decision.reason == "CRITICAL_FIELD_MISMATCH"

    def test_low_score_with_critical_mismatch_still_rejects(self, policy):
        assert policy.decide(30, (INSTITUTION_MISMATCH,), 1).status is S.REJECTED

    def test_forced_review_overrides_rejection(self):
        policy = DecisionPolicy(critical_mismatch_forces_review=True)
        decision = policy.decide(30, (INSTITUTION_MISMATCH,), 1)
        assert decision.status is S.MANUAL_REVIEW
        assert decision.reason == "CRITICAL_FIELD_MISMATCH"

    def test_attempt_limit_escalates(self, policy):
        decision = policy.decide(100, (), total_attempts=4)
        assert decision.status is S.MANUAL_REVIEW
        assert decision.reason == "ATTEMPT_LIMIT_EXCEEDED"

    def test_attempt_at_limit_still_automatic(self, policy):
        assert policy.decide(100, (), total_attempts=3).status is S.APPROVED


class TestPolicyConfiguration:
    def test_invalid_bands(self):
        with pytest.raises(ValueError):
            DecisionPolicy(approve_threshold=40, reject_below=60)

    def test_unknown_critical_field(self):
        with pytest.raises(ValueError):
            DecisionPolicy(critical_fields=("roll_number",))

    def test_from_config(self):
        cfg = Config(approve_threshold=90, reject_below=40, critical_fields=["full_name"])
        policy = DecisionPolicy.from_config(cfg)
        assert policy.approve_threshold == 90
        assert policy.critical_fields == ("full_name",)
        assert policy.decide(88, (INSTITUTION_MISMATCH,), 1).status is S.MANUAL_REVIEW
        assert policy.decide(92, (INSTITUTION_MISMATCH,), 1).status is S.APPROVED


class TestInstitutionMismatchScenario:
    """IIT Delhi claimed, IIT Bombay on the document, everything else equal."""

    @pytest.fixture
    def result(self, sample_claims):
        from credence.identity import from_extraction, from_user_claims
        from credence.matching import MatchingEngine

        extracted = from_extraction({
            name: {"value": value, "confidence": 90}
            for name, value in {**sample_claims, "institution": "IIT Bombay"}.items()
        })
        return MatchingEngine().match(from_user_claims(sample_claims), extracted)

    def test_default_bands_send_to_review(self, result):
        assert result.score == 75
        assert DecisionPolicy().decide(result.score, result.mismatches, 1).status is S.MANUAL_REVIEW

    def test_stricter_floor_rejects(self, result):
        policy = DecisionPolicy(reject_below=80)
        assert policy.decide(result.score, result.mismatches, 1).status is S.REJECTED
