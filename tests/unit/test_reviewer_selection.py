"""Tests for ReviewerSelector — epic-first selection and recent-pair penalty."""

import pytest

from teammate_agents.core.models import Issue, PerformanceMetrics, WorkRequirements
from teammate_agents.core.registry import AgentRegistry
from teammate_agents.errors import ReviewerUnavailable
from teammate_agents.review.reviewer_selection import ReviewerSelector

from coordination_fixtures import EPIC_ID, make_agent


def _make_issue(**overrides) -> Issue:
    defaults = dict(
        id="issue-3",
        epic_id=EPIC_ID,
        title="Add retry to webhook intake",
        assignee="author",
        requirements=WorkRequirements(languages=["python"]),
    )
    defaults.update(overrides)
    return Issue(**defaults)


def _pool(*agents):
    return AgentRegistry([make_agent("author"), *agents]).snapshot()


@pytest.fixture
def selector():
    return ReviewerSelector()


class TestSelection:
    def test_epic_member_preferred_over_stronger_outsider(self, selector):
        agents = _pool(
            make_agent("outsider", performance=PerformanceMetrics(success_rate=1.0)),
            make_agent("member"),
        )

        choice = selector.select(_make_issue(), "author", agents, epic_agent_ids={"author", "member"})

        assert choice.agent_id == "member"

    def test_widens_to_pool_when_no_member_qualifies(self, selector):
        agents = _pool(
            make_agent("member", languages=["go"], frameworks=[], capabilities=[]),
            make_agent("outsider"),
        )

        choice = selector.select(_make_issue(), "author", agents, epic_agent_ids={"member"})

        assert choice.agent_id == "outsider"

    def test_author_never_selected(self, selector):
        with pytest.raises(ReviewerUnavailable) as exc_info:
            selector.select(_make_issue(), "author", _pool())

        assert exc_info.value.author_id == "author"

    def test_overloaded_reviewer_skipped(self, selector):
        agents = _pool(make_agent("busy", workload=0.95), make_agent("free"))

        assert selector.select(_make_issue(), "author", agents).agent_id == "free"

    def test_score_formula(self, selector):
        agent = make_agent("r", performance=PerformanceMetrics(success_rate=0.8))

        score = selector.score(agent, _make_issue(), "author")

        # 100 * (0.6 * 1.0 + 0.25 * 0.8 + 0.15 * 1.0)
        assert score.score == pytest.approx(95.0)
        assert score.overlap == 1.0


class TestRecentPairs:
    def test_recent_pair_is_penalized(self, selector):
        agents = _pool(make_agent("r1"), make_agent("r2"))
        assert selector.select(_make_issue(), "author", agents).agent_id == "r1"

        selector.record_pair("r1", "author")

        choice = selector.select(_make_issue(), "author", agents)
        assert choice.agent_id == "r2"

    def test_pair_is_symmetric(self, selector):
        selector.record_pair("a", "b")

        assert selector.reviewed_recently("b", "a") is True
        assert selector.reviewed_recently("a", "c") is False
