"""Agent health scoring.

Additive-penalty model starting at 100. Compliance also requires an active,
uninfected agent. With the current penalties both gates agree with the
threshold: an inactive agent scores at most 75, an infected one at most 60.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

COMPLIANT_THRESHOLD = 80

PENALTY_INACTIVE = 25
PENALTY_OUT_OF_DATE = 15
PENALTY_INFECTED = 40
PENALTY_PER_THREAT = 10
MAX_THREAT_PENALTY = 30


class AgentHealth(Protocol):
    is_active: bool
    is_up_to_date: bool
    infected: bool
    active_threats: int


@dataclass(frozen=True)
class ComplianceResult:
    compliance_score: int
    is_compliant: bool

    @property
    def status_class(self) -> str:
        return "compliant" if self.is_compliant else "non_compliant"


def score_agent(agent: AgentHealth) -> ComplianceResult:
    score = 100
    if not agent.is_active:
        score -= PENALTY_INACTIVE
    if not agent.is_up_to_date:
        score -= PENALTY_OUT_OF_DATE
    if agent.infected:
        score -= PENALTY_INFECTED
    threats = max(0, int(agent.active_threats or 0))
    if threats:
        score -= min(threats * PENALTY_PER_THREAT, MAX_THREAT_PENALTY)

    score = max(0, min(100, score))
    is_compliant = score >= COMPLIANT_THRESHOLD and not agent.infected and agent.is_active
    return ComplianceResult(compliance_score=score, is_compliant=is_compliant)
