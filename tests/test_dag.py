import pytest

from matrixci import job, sh
from matrixci.dag import GateDecision, build_dag, may_start, plan_stages, topo_order, unmet_reason
from matrixci.errors import ConfigurationError
from matrixci.model import JobState
from matrixci.step_workflows.rust import canonical_jobs


def _j(name, needs=()):
    return job(name, sh("noop", "true"), needs=list(needs))


class TestGate:
    def test_job_without_dependencies_starts(self):
        assert may_start(_j("a"), {}) == GateDecision.START

    def test_all_dependencies_successful_starts(self):
        j = _j("c", ["a", "b"])
        states = {"a": JobState.SUCCESS, "b": JobState.SUCCESS}
        assert may_start(j, states) == GateDecision.START

    @pytest.mark.parametrize("other", [JobState.PENDING, JobState.RUNNING])
    def test_unfinished_dependency_waits(self, other):
        j = _j("c", ["a", "b"])
        states = {"a": JobState.SUCCESS, "b": other}
        assert may_start(j, states) == GateDecision.WAIT

    @pytest.mark.parametrize("bad", [JobState.FAILURE, JobState.SKIPPED])
    def test_failed_or_skipped_dependency_skips(self, bad):
        j = _j("c", ["a", "b"])
        states = {"a": JobState.RUNNING, "b": bad}
        assert may_start(j, states) == GateDecision.SKIP

    def test_unmet_reason_names_the_dependency(self):
        j = _j("c", ["a", "b"])
        reason = unmet_reason(j, {"a": JobState.SUCCESS, "b": JobState.FAILURE})
        assert reason == "dependency unmet: b failure"


class TestGraph:
    def test_canonical_pipeline_has_two_stages(self):
        assert plan_stages(canonical_jobs()) == [["format_check", "lint_check"], ["build_and_test"]]

    def test_topo_order_puts_dependencies_first(self):
        order = topo_order([_j("c", ["b"]), _j("b", ["a"]), _j("a")])
        assert order == ["a", "b", "c"]

    def test_adjacency_points_from_dependency_to_dependent(self):
        adj, indeg = build_dag([_j("a"), _j("b", ["a"])])
        assert adj["a"] == {"b"}
        assert indeg == {"a": 0, "b": 1}

    def test_duplicate_names(self):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            build_dag([_j("a"), _j("a")])

    def test_missing_dependency(self):
        with pytest.raises(ConfigurationError, match="missing job 'nope'"):
            build_dag([_j("a", ["nope"])])

    def test_self_dependency(self):
        with pytest.raises(ConfigurationError, match="itself"):
            build_dag([_j("a", ["a"])])

    def test_cycle(self):
        with pytest.raises(ConfigurationError, match="cycle"):
            plan_stages([_j("a", ["b"]), _j("b", ["a"]), _j("c")])
