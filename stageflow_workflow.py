# stageflow_workflow.py
# Static website pipeline: build once, test the build output, preview every
# merge request and deploy the default branch behind a manual approval.
from __future__ import annotations
from stageflow.dsl import pipeline, job, sh, rule, need, artifacts, environment

ON_DEFAULT_BRANCH = '$CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH'
ON_MERGE_REQUEST = '$CI_PIPELINE_SOURCE == "merge_request_event"'


def workflow():
    return pipeline(
        job(
            "build_website",
            sh("Build", "mkdir -p public && echo \"<h1>built from $CI_COMMIT_REF_NAME</h1>\" > public/index.html"),
            sh("Record version", "echo \"SITE_VERSION=${CI_COMMIT_SHA:-local}\" > build.env"),
            stage="build",
            artifacts=artifacts("public/"),
            exports="build.env",
        ),

        job(
            "unit_tests",
            sh("Check index exists", "test -f public/index.html"),
            sh("Check version exported", "test -n \"$SITE_VERSION\""),
            stage="test",
        ),

        job(
            "deploy_preview",
            sh("Publish preview", "echo \"deploying $SITE_VERSION to $CI_ENVIRONMENT_URL\""),
            stage="deploy",
            needs=["build_website", "unit_tests"],
            rules=[rule(ON_MERGE_REQUEST)],
            environment=environment("preview/$CI_COMMIT_REF_NAME", "https://$CI_COMMIT_REF_NAME.preview.example.com"),
            resource_group="preview",
        ),

        job(
            "deploy_prod",
            sh("Publish", "echo \"deploying $SITE_VERSION to production\""),
            stage="deploy",
            needs=[need("build_website"), need("unit_tests", artifacts=False)],
            rules=[rule(ON_DEFAULT_BRANCH, when="manual")],
            environment=environment("production", "https://www.example.com"),
            resource_group="production",
            retry=1,
        ),

        stages=["build", "test", "deploy"],
        workflow=[
            rule(ON_MERGE_REQUEST),
            rule(ON_DEFAULT_BRANCH),
        ],
    )
