"""Tests for FairnessBalancer — capacity filtering, tie-breaking and rebalance proposals."""

import pytest

from teammate_agents.core.config import BalancerConfig
from teammate_agents.core.models import WorkRequirements
from teammate_agents.core.registry import AgentRegistry
from teammate_agents.errors import NoCapacity
from teammate_agents.scoring.balancer import FairnessBalancer
from teammate_agents.scoring.scorer import AgentScorer

from coordination_fixtures import make_agent


@pytest.fixture
def balancer():
    return FairnessBalancer(AgentScorer())


def _registered(*agents):
    """Snapshot with registration order applied."""
    return AgentRegistry(agents).snapshot()


class TestCapacity:
    def test_agent_at_task_cap_has_no_capacity(self, balancer):
        agent = make_agent("a", max_concurrent_tasks=2, active_issue_ids={"i1", "i2"})

        assert balancer.has_capacity(agent) is False

    def test_agent_over_workload_limit_has_no_capacity(self, balancer):
        assert balancer.has_capacity(make_agent("a", workload=0.95)) is False

    def test_workload_at_limit_still_has_capacity(self, balancer):
        assert balancer.has_capacity(make_agent("a", workload=0.9)) is True

    def test_full_agents_are_never_candidates(self, balancer):
        agents = _registered(
            make_agent("full", max_concurrent_tasks=1, active_issue_ids={"i1"}),
            make_agent("free"),
        )

        ranked = balancer.candidates(agents, WorkRequirements())

        assert [c.agent.id for c in ranked] == ["free"]

    def test_select_raises_when_nobody_has_room(self, balancer):
        agents = _registered(make_agent("busy", workload=1.0))

        with pytest.raises(NoCapacity) as exc_info:
            balancer.select("issue-7", agents, WorkRequirements())

        assert exc_info.value.issue_id == "issue-7"
        assert exc_info.value.retryable is True

    def test_ineligible_match_is_filtered(self, balancer):
        agents = _registered(make_agent("a"))
        req = WorkRequirements(required_capabilities=["kernel-drivers"])

        assert balancer.candidates(agents, req) == []


class TestSelection:
    def test_tie_broken_by_registration_order(self, balancer):
        agents = _registered(make_agent("first"), make_agent("second"))

        chosen = balancer.select("issue-1", list(reversed(agents)), WorkRequirements())

        assert chosen.agent.id == "first"

    def test_idle_agent_preferred_over_busy_one(self, balancer):
        agents = _registered(
            make_agent("busy", active_issue_ids={"i1", "i2"}),
            make_agent("idle"),
        )

        ranked = balancer.candidates(agents, WorkRequirements())

        assert ranked[0].agent.id == "idle"
        assert ranked[0].fairness == pytest.approx(60.0)
        assert ranked[1].fairness == pytest.approx(40.0)

    def test_combined_score_blends_match_and_fairness(self, balancer):
        agents = _registered(make_agent("solo"))

        candidate = balancer.select("issue-1", agents, WorkRequirements())

        expected = 0.7 * candidate.match.total + 0.3 * candidate.fairness
        assert candidate.combined == pytest.approx(expected)

    def test_exclude_skips_agent(self, balancer):
        agents = _registered(make_agent("first"), make_agent("second"))

        chosen = balancer.select("issue-1", agents, WorkRequirements(), exclude=["first"])

        assert chosen.agent.id == "second"

    def test_fairness_score_is_clamped(self, balancer):
        agent = make_agent("a", active_issue_ids={f"i{n}" for n in range(10)})

        assert balancer.fairness_score(agent, pool_average=0.0) == 0.0
        assert balancer.fairness_score(make_agent("b"), pool_average=20.0) == 100.0


class TestRebalance:
    def test_moves_one_issue_from_overloaded_to_underloaded(self, balancer):
        agents = _registered(
            make_agent("hot", workload=0.95, active_issue_ids={"i1", "i2"}),
            make_agent("cold", workload=0.1),
        )

        proposals = balancer.propose_rebalance(agents)

        assert len(proposals) == 1
        assert proposals[0].issue_id == "i1"
        assert proposals[0].from_agent == "hot"
        assert proposals[0].to_agent == "cold"

    def test_each_target_receives_at_most_one_task(self, balancer):
        agents = _registered(
            make_agent("hot-1", workload=0.95, active_issue_ids={"i1"}),
            make_agent("hot-2", workload=0.92, active_issue_ids={"i2"}),
            make_agent("cold", workload=0.0),
        )

        proposals = balancer.propose_rebalance(agents)

        assert [(p.from_agent, p.to_agent) for p in proposals] == [("hot-1", "cold")]

    def test_no_proposal_without_underloaded_agents(self, balancer):
        agents = _registered(
            make_agent("hot", workload=0.95, active_issue_ids={"i1"}),
            make_agent("warm", workload=0.5),
        )

        assert balancer.propose_rebalance(agents) == []

    def test_target_must_be_eligible_for_the_issue(self, balancer):
        agents = _registered(
            make_agent("hot", workload=0.95, active_issue_ids={"i1"}),
            make_agent("cold", workload=0.0),
        )
        req = {"i1": WorkRequirements(required_capabilities=["kernel-drivers"])}

        assert balancer.propose_rebalance(agents, req) == []


class TestConfig:
    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError, match="match_weight"):
            BalancerConfig(match_weight=0.8, fairness_weight=0.3)

    def test_underload_below_overload(self):
        with pytest.raises(ValueError, match="underload_threshold"):
            BalancerConfig(underload_threshold=0.95)
