# tests/test_artifacts.py
"""Artifact bundles, dotenv exports and the run's VariableSet."""

from __future__ import annotations

import io
import json
import tarfile

import pytest

from conftest import noop
from stageflow.artifacts import ArtifactBundle, ArtifactStore, VariableSet, expand_variables, parse_dotenv
from stageflow.dsl import artifacts
from stageflow.errors import ExecutorError, MissingArtifactError, VariableConflictError


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path / "artifacts", run_id="r1")


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    (ws / "public" / "css").mkdir(parents=True)
    (ws / "public" / "index.html").write_text("<h1>hi</h1>")
    (ws / "public" / "css" / "site.css").write_text("body{}")
    (ws / "public" / "draft.tmp").write_text("scratch")
    (ws / "notes.txt").write_text("not an artifact")
    return ws


class TestParseDotenv:
    def test_basic(self):
        text = "# comment\n\nA=1\nexport B=two words\nC='quoted'\nD=\"dq\"\nE=\nF=a=b\n"
        assert parse_dotenv(text) == {"A": "1", "B": "two words", "C": "quoted", "D": "dq", "E": "", "F": "a=b"}

    @pytest.mark.parametrize("line", ["NOVALUE", "1BAD=x", "BAD KEY=x", "=x"])
    def test_invalid_lines(self, line):
        with pytest.raises(ExecutorError) as exc:
            parse_dotenv(f"OK=1\n{line}\n", source="build.env")
        assert exc.value.details == {"line": 2}
        assert "build.env" in exc.value.message


class TestExpandVariables:
    def test_forms(self):
        env = {"REF": "feature-x", "HOST": "example.com"}
        assert expand_variables("https://$REF.$HOST/", env) == "https://feature-x.example.com/"
        assert expand_variables("preview/${REF}-1", env) == "preview/feature-x-1"

    def test_unknown_is_empty_and_dollar_escape(self):
        assert expand_variables("a$MISSING-b", {}) == "a-b"
        assert expand_variables("cost: $$5", {}) == "cost: $5"


class TestVariableSet:
    def test_export_and_read(self):
        vs = VariableSet()
        vs.export("build", {"VERSION": "1.0"})
        assert vs["VERSION"] == "1.0"
        assert "VERSION" in vs
        assert vs.producer_of("VERSION") == "build"
        assert vs.exported_by("build") == {"VERSION": "1.0"}
        assert vs.get("MISSING") is None

    def test_same_value_from_second_job_is_fine(self):
        vs = VariableSet()
        vs.export("a", {"K": "v"})
        vs.export("b", {"K": "v"})
        assert vs.producer_of("K") == "a"

    def test_conflicting_value_rejected(self):
        vs = VariableSet()
        vs.export("a", {"K": "v1"})
        with pytest.raises(VariableConflictError) as exc:
            vs.export("b", {"K": "v2", "OTHER": "x"})
        assert exc.value.details == {"key": "K", "owner": "a"}
        # atomic: nothing from the failed export is visible
        assert "OTHER" not in vs
        assert vs["K"] == "v1"

    def test_override_takes_ownership(self):
        vs = VariableSet()
        vs.export("a", {"K": "v1"})
        vs.export("b", {"K": "v2"}, override=True)
        assert vs["K"] == "v2"
        assert vs.exported_by("a") == {"K": "v1"}

    def test_view_for_sources(self):
        vs = VariableSet()
        vs.export("a", {"X": "1", "SHARED": "a"})
        vs.export("b", {"Y": "2", "SHARED": "b"}, override=True)
        vs.export("c", {"Z": "3"})
        assert vs.view_for(["a", "b"]) == {"X": "1", "Y": "2", "SHARED": "b"}
        assert vs.view_for([]) == {}


class TestArtifactStore:
    def test_pack_and_restore(self, store, workspace, tmp_path):
        job = noop("build", artifacts=artifacts("public/", exclude=["**/*.tmp"]))
        bundle = store.pack(job, workspace)
        assert bundle is not None
        assert bundle.files == ("public/css/site.css", "public/index.html")
        assert bundle.archive.name == "artifacts.tar.gz"
        assert bundle.archive.parent == store.root / "r1" / "build"

        manifest = store.manifest("build")
        assert manifest["files"] == list(bundle.files)
        assert manifest["sha256"] == bundle.sha256

        dest = tmp_path / "consumer"
        restored = store.restore([bundle], dest)
        assert restored == list(bundle.files)
        assert (dest / "public" / "index.html").read_text() == "<h1>hi</h1>"
        assert not (dest / "notes.txt").exists()

    def test_glob_paths(self, store, workspace):
        job = noop("build", artifacts=artifacts("public/*.html", "notes.txt"))
        bundle = store.pack(job, workspace)
        assert bundle.files == ("public/index.html", "notes.txt")

    def test_nothing_matched(self, store, workspace):
        assert store.pack(noop("build", artifacts=artifacts("dist/")), workspace) is None
        assert store.pack(noop("build"), workspace) is None

    def test_publish_success_with_dotenv(self, store, workspace):
        (workspace / "build.env").write_text("VERSION=2.0\n")
        job = noop("build", artifacts=artifacts("public/"), exports="build.env")
        pub = store.publish(job, workspace, succeeded=True, exported={"EXTRA": "x"})
        assert pub.bundle is not None
        assert pub.variables == {"VERSION": "2.0", "EXTRA": "x"}
        assert store.variables["VERSION"] == "2.0"
        store.confirm("consumer", [job])

    def test_failed_job_keeps_always_artifacts_only(self, store, workspace):
        kept = noop("a", artifacts=artifacts("public/", when="always"))
        dropped = noop("b", artifacts=artifacts("public/"))
        assert store.publish(kept, workspace, succeeded=False).bundle.from_failed_job
        assert store.publish(dropped, workspace, succeeded=False).bundle is None
        assert store.bundle("b") is None

    def test_failed_job_exports_nothing(self, store, workspace):
        (workspace / "build.env").write_text("VERSION=2.0\n")
        job = noop("build", exports="build.env")
        store.publish(job, workspace, succeeded=False)
        assert "VERSION" not in store.variables

    def test_confirm_reports_missing_outputs(self, store, workspace):
        producer = noop("build", artifacts=artifacts("dist/"), exports="build.env")
        store.publish(producer, workspace, succeeded=True)
        with pytest.raises(MissingArtifactError) as exc:
            store.confirm("deploy", [producer])
        assert exc.value.job == "deploy"
        assert exc.value.details["missing"] == ["build: artifacts", "build: exports"]

    def test_confirm_rejects_bundle_from_failed_job(self, store, workspace):
        job = noop("a", artifacts=artifacts("public/", when="always"))
        store.publish(job, workspace, succeeded=False)
        with pytest.raises(MissingArtifactError):
            store.confirm("b", [job])

    def test_sources_without_declared_outputs_always_confirm(self, store):
        store.confirm("b", [noop("a")])

    def test_restore_refuses_member_outside_workspace(self, store, tmp_path):
        archive = tmp_path / "evil.tar.gz"
        with tarfile.open(str(archive), mode="w:gz") as tar:
            info = tarfile.TarInfo(name="../escaped.txt")
            info.size = 3
            tar.addfile(info, fileobj=io.BytesIO(b"bad"))
        bundle = ArtifactBundle(
            job="evil", run_id="r1", archive=archive, files=("../escaped.txt",), sha256="", created_at=0.0
        )
        dest = tmp_path / "dest"
        with pytest.raises(ExecutorError, match="escapes the workspace") as exc:
            store.restore([bundle], dest)
        assert exc.value.job == "evil"
        assert not (tmp_path / "escaped.txt").exists()

    def test_undecodable_export_file(self, store, workspace):
        (workspace / "build.env").write_bytes(b"VERSION=\xff\xfe\n")
        with pytest.raises(ExecutorError, match="not valid UTF-8") as exc:
            store.read_exports(noop("build", exports="build.env"), workspace)
        assert exc.value.details["file"] == "build.env"

    def test_manifest_is_json(self, store, workspace):
        store.pack(noop("build", artifacts=artifacts("notes.txt")), workspace)
        raw = (store.root / "r1" / "build" / "manifest.json").read_text()
        assert json.loads(raw)["job"] == "build"
