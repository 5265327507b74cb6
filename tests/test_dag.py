# tests/test_dag.py
"""Graph building: stage edges, needs, .pre/.post, artifact sources."""

from __future__ import annotations

import pytest

from conftest import noop
from stageflow.dag import ExplicitNeedEdge, StageOrderEdge, build_graph, plan_levels, topo_levels
from stageflow.dsl import artifacts, need, pipeline
from stageflow.errors import ArtifactDependencyError, ConfigError, CycleError, DanglingDependencyError


def graph_of(spec, included=None):
    spec.validate()
    return build_graph(spec, included if included is not None else [j.name for j in spec.jobs])


class TestStageOrdering:
    def test_every_earlier_stage_job_precedes(self):
        spec = pipeline(
            noop("compile", stage="build"),
            noop("assets", stage="build"),
            noop("unit", stage="test"),
            noop("deploy", stage="deploy"),
        )
        g = graph_of(spec)
        assert g.predecessors["unit"] == {"compile", "assets"}
        assert g.predecessors["deploy"] == {"compile", "assets", "unit"}
        assert g.levels == [["assets", "compile"], ["unit"], ["deploy"]]
        assert all(isinstance(e, StageOrderEdge) for e in g.edges)

    def test_same_stage_jobs_are_unordered(self):
        g = graph_of(pipeline(noop("a"), noop("b")))
        assert g.predecessors == {"a": set(), "b": set()}
        assert g.levels == [["a", "b"]]

    def test_excluded_jobs_leave_no_edges(self):
        spec = pipeline(noop("compile", stage="build"), noop("docs", stage="build"), noop("unit", stage="test"))
        g = graph_of(spec, ["compile", "unit"])
        assert g.predecessors["unit"] == {"compile"}
        assert "docs" not in g.jobs

    def test_pre_and_post_stages(self):
        spec = pipeline(
            noop("setup", stage=".pre"),
            noop("compile", stage="build"),
            noop("fast", stage="deploy", needs=[]),
            noop("cleanup", stage=".post"),
        )
        g = graph_of(spec)
        assert g.predecessors["compile"] == {"setup"}
        # explicit needs still wait for .pre
        assert g.predecessors["fast"] == {"setup"}
        assert g.predecessors["cleanup"] == {"setup", "compile", "fast"}
        assert g.order[0] == "setup"
        assert g.order[-1] == "cleanup"

    def test_unknown_stage_rejected(self):
        with pytest.raises(ConfigError, match="undeclared stage"):
            pipeline(noop("a", stage="qa")).validate()

    def test_reserved_stage_name_rejected(self):
        with pytest.raises(ConfigError):
            pipeline(noop("a"), stages=["build", ".pre"]).validate()


class TestNeeds:
    def test_needs_bypass_stage_ordering(self):
        spec = pipeline(
            noop("compile", stage="build"),
            noop("slow", stage="build"),
            noop("unit", stage="test", needs=["compile"]),
        )
        g = graph_of(spec)
        assert g.predecessors["unit"] == {"compile"}
        assert g.edges_into("unit") == [ExplicitNeedEdge("compile", "unit")]

    def test_empty_needs_starts_immediately(self):
        spec = pipeline(noop("compile", stage="build"), noop("lint", stage="test", needs=[]))
        assert graph_of(spec).predecessors["lint"] == set()

    def test_same_stage_needs_allowed(self):
        spec = pipeline(noop("a", stage="test"), noop("b", stage="test", needs=["a"]))
        assert graph_of(spec).predecessors["b"] == {"a"}

    def test_forward_need_is_config_error(self):
        spec = pipeline(noop("unit", stage="test", needs=["deploy"]), noop("deploy", stage="deploy"))
        with pytest.raises(ConfigError, match="later stage"):
            spec.validate()

    def test_dangling_need(self):
        spec = pipeline(noop("compile", stage="build"), noop("unit", stage="test", needs=["compile"]))
        with pytest.raises(DanglingDependencyError) as exc:
            build_graph(spec, ["unit"])
        assert exc.value.job == "unit"

    def test_optional_need_dropped_when_excluded(self):
        spec = pipeline(
            noop("compile", stage="build"),
            noop("unit", stage="test", needs=[need("compile", optional=True)]),
        )
        g = build_graph(spec, ["unit"])
        assert g.predecessors["unit"] == set()

    def test_cycle_detected(self):
        spec = pipeline(noop("a", needs=["b"]), noop("b", needs=["a"]), noop("c"))
        with pytest.raises(CycleError) as exc:
            graph_of(spec)
        assert exc.value.details["stuck"] == ["a", "b"]

    def test_self_need_rejected(self):
        with pytest.raises(ConfigError, match="needs itself"):
            pipeline(noop("a", needs=["a"])).validate()

    def test_duplicate_job_names_rejected(self):
        with pytest.raises(ConfigError, match="Duplicate job names"):
            pipeline(noop("a"), noop("a")).validate()


class TestArtifactSources:
    def test_stage_predecessors_by_default(self):
        spec = pipeline(noop("compile", stage="build"), noop("unit", stage="test"))
        assert graph_of(spec).artifact_sources["unit"] == ["compile"]

    def test_needs_without_artifacts_excluded(self):
        spec = pipeline(
            noop("compile", stage="build"),
            noop("lint", stage="build"),
            noop("deploy", stage="deploy", needs=[need("compile"), need("lint", artifacts=False)]),
        )
        assert graph_of(spec).artifact_sources["deploy"] == ["compile"]

    def test_explicit_dependencies(self):
        spec = pipeline(
            noop("compile", stage="build"),
            noop("docs", stage="build"),
            noop("unit", stage="test", dependencies=["docs"]),
        )
        assert graph_of(spec).artifact_sources["unit"] == ["docs"]

    def test_unordered_source_is_an_error(self):
        spec = pipeline(
            noop("report", stage="test", artifacts=artifacts("report.xml")),
            noop("publish", stage="test", dependencies=["report"]),
        )
        with pytest.raises(ArtifactDependencyError) as exc:
            graph_of(spec)
        assert exc.value.details == {"source": "report"}

    def test_sources_in_topological_order(self):
        spec = pipeline(
            noop("compile", stage="build"),
            noop("unit", stage="test"),
            noop("deploy", stage="deploy", dependencies=["unit", "compile"]),
        )
        assert graph_of(spec).artifact_sources["deploy"] == ["compile", "unit"]


class TestTopoLevels:
    def test_diamond(self):
        adj = {"a": {"b", "c"}, "b": {"d"}, "c": {"d"}, "d": set()}
        indeg = {"a": 0, "b": 1, "c": 1, "d": 2}
        assert topo_levels(adj, indeg) == [["a"], ["b", "c"], ["d"]]

    def test_does_not_mutate_indegree(self):
        indeg = {"a": 0, "b": 1}
        topo_levels({"a": {"b"}}, indeg)
        assert indeg == {"a": 0, "b": 1}

    def test_ancestors_and_descendants(self):
        spec = pipeline(noop("a", stage="build"), noop("b", stage="test"), noop("c", stage="deploy"))
        g = graph_of(spec)
        assert g.ancestors("c") == {"a", "b"}
        assert g.descendants("a") == {"b", "c"}

    def test_plan_levels_numbered(self):
        g = graph_of(pipeline(noop("a", stage="build"), noop("b", stage="test")))
        assert plan_levels(g) == [(1, ["a"]), (2, ["b"])]
