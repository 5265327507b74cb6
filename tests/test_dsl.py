# tests/test_dsl.py
from __future__ import annotations

import pytest

from stageflow.dsl import artifacts, build, environment, job, matrix, need, pipeline, rule, sh
from stageflow.errors import ConfigError
from stageflow.model import EnvironmentSpec, Need, When


class TestJob:
    def test_defaults(self):
        j = job("unit", sh("pytest", "pytest -q"))
        assert j.stage == "test"
        assert j.needs is None
        assert j.when == When.ON_SUCCESS
        assert j.steps[0].run == "pytest -q"

    def test_needs_accept_names_and_need_objects(self):
        j = job("deploy", sh("x", "true"), needs=["build", need("lint", artifacts=False)])
        assert j.needs == (Need("build"), Need("lint", artifacts=False))

    def test_empty_needs_is_not_none(self):
        assert job("lint", sh("x", "true"), needs=[]).needs == ()

    def test_environment_string(self):
        j = job("deploy", sh("x", "true"), environment="staging")
        assert j.environment == EnvironmentSpec(name="staging")

    def test_default_cwd_applies_to_steps_without_one(self):
        j = job("docs", sh("a", "make"), sh("b", "ls", cwd="out"), cwd="docs")
        assert [s.cwd for s in j.steps] == ["docs", "out"]

    def test_variables_become_strings(self):
        assert job("x", sh("x", "true"), variables={"N": 3}).variables == {"N": "3"}

    def test_no_steps(self):
        with pytest.raises(ConfigError):
            job("empty")

    def test_bad_when(self):
        with pytest.raises(ConfigError):
            job("x", sh("x", "true"), when="sometimes")


class TestBuilder:
    def test_fluent_build(self):
        j = (
            build("deploy_prod")
            .in_stage("deploy")
            .define_step("ship", "./ship.sh")
            .depends_on("build_website")
            .with_rules(rule("$CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH"))
            .manual()
            .in_environment("production", "https://example.com")
            .in_resource_group("production")
            .with_retry(1)
            .with_timeout(60)
            .with_variables(TIER="prod")
            .build()
        )
        assert j.stage == "deploy"
        assert j.when == When.MANUAL
        assert j.needs == (Need("build_website"),)
        assert j.environment.url == "https://example.com"
        assert j.resource_group == "production"
        assert j.retry == 1
        assert j.timeout == 60
        assert j.variables == {"TIER": "prod"}

    def test_depends_on_nothing(self):
        j = build("lint").define_step("ruff", "ruff check").depends_on().build()
        assert j.needs == ()

    def test_exports_and_artifacts(self):
        j = (
            build("site")
            .define_step("b", "make")
            .with_artifacts("public/", when="always", exclude=["*.tmp"])
            .exports_dotenv("build.env", override=True)
            .takes_artifacts_from("deps")
            .build()
        )
        assert j.artifacts == artifacts("public/", when="always", exclude=["*.tmp"])
        assert j.exports == "build.env"
        assert j.override_exports
        assert j.dependencies == ("deps",)

    def test_no_steps(self):
        with pytest.raises(ConfigError):
            build("x").build()


class TestPipeline:
    def test_matrix_flattened(self):
        spec = pipeline(
            job("compile", sh("make", "make"), stage="build"),
            matrix("py", ["3.11", "3.12"]).jobs(
                lambda v: job(f"test-py{v}", sh("t", "pytest"), variables={"PYTHON": v})
            ),
        )
        assert [j.name for j in spec.jobs] == ["compile", "test-py3.11", "test-py3.12"]
        assert spec.job("test-py3.12").variables == {"PYTHON": "3.12"}
        spec.validate()

    def test_pipeline_defaults(self):
        spec = pipeline(job("a", sh("x", "true")), variables={"N": 1})
        assert spec.stages == ("build", "test", "deploy")
        assert spec.all_stages[0] == ".pre"
        assert spec.all_stages[-1] == ".post"
        assert spec.variables == {"N": "1"}

    def test_environment_action(self):
        assert environment("review/x", action="stop").action == "stop"

    def test_rule_when_parsed(self):
        assert rule(when="manual").when == When.MANUAL
        assert rule().when is None


class TestPackageNamespace:
    def test_top_level_pipeline_is_the_dsl_helper(self):
        import stageflow

        assert stageflow.pipeline is pipeline
        spec = stageflow.pipeline(stageflow.job("a", stageflow.sh("x", "true")))
        assert [j.name for j in spec.jobs] == ["a"]

    def test_run_facade_importable(self):
        import stageflow
        from stageflow.run import PipelineRun, create_run

        assert stageflow.create_run is create_run
        assert stageflow.PipelineRun is PipelineRun
