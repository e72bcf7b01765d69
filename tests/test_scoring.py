"""Tests for the agent health scorer."""

import itertools
from dataclasses import dataclass

import pytest

from sentinel_sync.services import scoring
from sentinel_sync.services.scoring import COMPLIANT_THRESHOLD, PENALTY_INACTIVE, score_agent


@dataclass
class FakeAgent:
    is_active: bool = True
    is_up_to_date: bool = True
    infected: bool = False
    active_threats: int = 0


class TestScoreAgent:

    def test_healthy_agent(self):
        result = score_agent(FakeAgent())
        assert result.compliance_score == 100
        assert result.is_compliant is True
        assert result.status_class == "compliant"

    def test_inactive_clean_agent_is_not_compliant(self):
        result = score_agent(FakeAgent(is_active=False))
        assert result.compliance_score == 75
        assert result.is_compliant is False

    def test_out_of_date_only_stays_compliant(self):
        result = score_agent(FakeAgent(is_up_to_date=False))
        assert result.compliance_score == 85
        assert result.is_compliant is True

    def test_infected(self):
        result = score_agent(FakeAgent(infected=True))
        assert result.compliance_score == 60
        assert result.is_compliant is False
        assert result.status_class == "non_compliant"

    @pytest.mark.parametrize("threats,expected", [(1, 90), (2, 80), (3, 70), (7, 70)])
    def test_threat_penalty_is_capped(self, threats, expected):
        assert score_agent(FakeAgent(active_threats=threats)).compliance_score == expected

    def test_two_threats_hits_threshold_exactly(self):
        result = score_agent(FakeAgent(active_threats=2))
        assert result.compliance_score == COMPLIANT_THRESHOLD
        assert result.is_compliant is True

    def test_worst_case_clamps_to_zero(self):
        result = score_agent(
            FakeAgent(is_active=False, is_up_to_date=False, infected=True, active_threats=10)
        )
        assert result.compliance_score == 0
        assert result.is_compliant is False

    def test_negative_threat_count_is_ignored(self):
        assert score_agent(FakeAgent(active_threats=-3)).compliance_score == 100

    def test_bounds_and_gate_for_all_combinations(self):
        for active, up_to_date, infected, threats in itertools.product(
            (True, False), (True, False), (True, False), range(0, 6)
        ):
            result = score_agent(
                FakeAgent(
                    is_active=active,
                    is_up_to_date=up_to_date,
                    infected=infected,
                    active_threats=threats,
                )
            )
            assert 0 <= result.compliance_score <= 100
            if result.is_compliant:
                assert result.compliance_score >= COMPLIANT_THRESHOLD
                assert active and not infected

    def test_inactive_agent_never_reaches_threshold(self):
        best = score_agent(FakeAgent(is_active=False))
        assert best.compliance_score == 100 - PENALTY_INACTIVE
        assert best.compliance_score < COMPLIANT_THRESHOLD

    def test_infected_agent_with_threshold_score_is_not_compliant(self, monkeypatch):
        monkeypatch.setattr(scoring, "PENALTY_INFECTED", 5)
        result = score_agent(FakeAgent(infected=True))
        assert result.compliance_score == 95
        assert result.is_compliant is False
