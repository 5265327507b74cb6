# artifacts.py
from __future__ import annotations

import hashlib
import json
import logging
import re
import tarfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import ExecutorError, MissingArtifactError, VariableConflictError
from .model import JobSpec, When

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
#   root/
#     <run_id>/
#       <job_name>/
#         artifacts.tar.gz
#         manifest.json
#
# Bundles are written once and never modified. Exported variables live in
# memory, addressed by (job, key), and are append-only for the run.
# ---------------------------------------------------------------------

DEFAULT_ARTIFACT_DIR = ".stageflow/artifacts"
DEFAULT_EXCLUDES = [
    ".git/**",
    ".stageflow/**",
    "**/__pycache__/**",
    "**/*.pyc",
]

_DOTENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class ArtifactBundle:
    """A persisted file tree produced by one job. Read-only once created."""
    job: str
    run_id: str
    archive: Path
    files: Tuple[str, ...]
    sha256: str
    created_at: float
    from_failed_job: bool = False


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: Sequence[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _resolve_paths(workspace: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand artifact path patterns into concrete paths.
    Supports:
      - file path: "report.xml"
      - dir path:  "build/"
      - glob:      "dist/*.whl", "coverage/**"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = workspace / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(workspace.glob(pat)) if m.exists())

    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def _collect_files(workspace: Path, patterns: Sequence[str], excludes: Sequence[str]) -> List[Path]:
    files: List[Path] = []
    for p in _resolve_paths(workspace, patterns):
        candidates = [p] if p.is_file() else list(_iter_files_under(p))
        for f in candidates:
            if not _matches_any_glob(_relpath(f, workspace), excludes):
                files.append(f)
    return files


def parse_dotenv(text: str, *, source: str = "<dotenv>") -> Dict[str, str]:
    """
    Parse KEY=VALUE lines.

    Blank lines and `#` comments are ignored, an `export ` prefix is allowed,
    and matching single or double quotes around the value are stripped.
    """
    out: Dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not _DOTENV_KEY.match(key):
            raise ExecutorError(
                f"Invalid dotenv line {lineno} in {source}: {raw!r}",
                details={"line": lineno},
            )
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        out[key] = value
    return out


_VAR_REF = re.compile(r"\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def expand_variables(text: str, variables: Mapping[str, str]) -> str:
    """Substitute $VAR and ${VAR}; unknown names expand to "" and $$ is a literal $."""

    def sub(m: "re.Match[str]") -> str:
        if m.group(0) == "$$":
            return "$"
        return str(variables.get(m.group(1) or m.group(2), ""))

    return _VAR_REF.sub(sub, text)


class VariableSet:
    """
    Run-scoped exported variables.

    Entries are addressed by (job, key) and never rewritten. The flat view
    maps each key to its current owner's value; another job may only take
    over a key when it is published with override=True.
    """

    def __init__(self):
        self._entries: Dict[Tuple[str, str], str] = {}
        self._owner: Dict[str, str] = {}
        self._lock = threading.Lock()

    def export(self, job: str, values: Mapping[str, str], *, override: bool = False) -> None:
        """Publish all values of one job atomically."""
        with self._lock:
            for key, value in values.items():
                if (job, key) in self._entries and self._entries[(job, key)] != value:
                    raise VariableConflictError(
                        f"Job '{job}' already exported {key}",
                        job=job,
                        details={"key": key},
                    )
                owner = self._owner.get(key)
                if owner is not None and owner != job and not override:
                    if self._entries[(owner, key)] != value:
                        raise VariableConflictError(
                            f"Job '{job}' exports {key}, already exported by '{owner}'",
                            job=job,
                            details={"key": key, "owner": owner},
                        )
            for key, value in values.items():
                self._entries[(job, key)] = str(value)
                if key not in self._owner or override:
                    self._owner[key] = job

    def __getitem__(self, key: str) -> str:
        with self._lock:
            owner = self._owner[key]
            return self._entries[(owner, key)]

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._owner

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        try:
            return self[key]
        except KeyError:
            return default

    def producer_of(self, key: str) -> Optional[str]:
        with self._lock:
            return self._owner.get(key)

    def exported_by(self, job: str) -> Dict[str, str]:
        with self._lock:
            return {k: v for (j, k), v in self._entries.items() if j == job}

    def view_for(self, sources: Sequence[str]) -> Dict[str, str]:
        """Values visible to a consumer of `sources`; later sources win on shared keys."""
        out: Dict[str, str] = {}
        for src in sources:
            out.update(self.exported_by(src))
        return out

    def as_dict(self) -> Dict[str, str]:
        with self._lock:
            return {k: self._entries[(owner, k)] for k, owner in self._owner.items()}


@dataclass
class Publication:
    """What one job completion added to the store."""
    job: str
    bundle: Optional[ArtifactBundle] = None
    variables: Dict[str, str] = field(default_factory=dict)


class ArtifactStore:
    """
    File-based artifact store plus the run's VariableSet.

    All writes for a run go through publish(), which the scheduler calls
    from its single commit point per job completion.
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR, run_id: str = "local"):
        self.root = Path(root).resolve()
        self.run_id = run_id
        self.variables = VariableSet()
        self._bundles: Dict[str, ArtifactBundle] = {}
        self._exported: set[str] = set()
        self._lock = threading.Lock()

    def _job_dir(self, job_name: str) -> Path:
        d = self.root / self.run_id / job_name
        d.mkdir(parents=True, exist_ok=True)
        return d

    # -----------------------------------------------------------------
    # writes
    # -----------------------------------------------------------------

    def pack(self, job: JobSpec, workspace: Path, *, failed: bool = False) -> Optional[ArtifactBundle]:
        """Archive the job's declared artifact paths from its workspace."""
        if job.artifacts is None:
            return None
        workspace = Path(workspace).resolve()
        excludes = list(DEFAULT_EXCLUDES) + list(job.artifacts.exclude)
        files = _collect_files(workspace, job.artifacts.paths, excludes)
        if not files:
            logger.warning("Job %s: no files matched artifact paths %s", job.name, list(job.artifacts.paths))
            return None

        d = self._job_dir(job.name)
        art = d / "artifacts.tar.gz"
        tmp = art.with_suffix(".gz.tmp")
        rels = [_relpath(f, workspace) for f in files]
        try:
            # Build tar.gz in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for f, rel in zip(files, rels):
                    tar.add(str(f), arcname=rel, recursive=False)
            tmp.replace(art)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        bundle = ArtifactBundle(
            job=job.name,
            run_id=self.run_id,
            archive=art,
            files=tuple(rels),
            sha256=_sha256_file(art),
            created_at=time.time(),
            from_failed_job=failed,
        )
        manifest = {
            "job": bundle.job,
            "run_id": bundle.run_id,
            "files": list(bundle.files),
            "sha256": bundle.sha256,
            "created_at": bundle.created_at,
            "from_failed_job": failed,
        }
        (d / "manifest.json").write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
        return bundle

    def read_exports(self, job: JobSpec, workspace: Path) -> Optional[Dict[str, str]]:
        """Parse the job's dotenv export file; None if it was not written."""
        if job.exports is None:
            return None
        path = Path(workspace) / job.exports
        if not path.is_file():
            logger.warning("Job %s: export file %s was not written", job.name, job.exports)
            return None
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ExecutorError(
                f"export file {job.exports} is not valid UTF-8",
                job=job.name,
                details={"file": job.exports, "position": e.start},
            ) from e
        return parse_dotenv(text, source=str(path))

    def publish(
        self,
        job: JobSpec,
        workspace: Path,
        *,
        succeeded: bool,
        bundle: Optional[ArtifactBundle] = None,
        exported: Optional[Mapping[str, str]] = None,
    ) -> Publication:
        """
        Persist a finished job's outputs.

        Succeeded jobs publish artifacts and exports. Failed jobs only keep
        artifacts declared with when=always, for diagnosis; those are never
        handed to consumers.
        """
        pub = Publication(job=job.name)
        keep_on_failure = job.artifacts is not None and job.artifacts.when == When.ALWAYS
        if not succeeded and not keep_on_failure:
            return pub

        if bundle is None:
            bundle = self.pack(job, workspace, failed=not succeeded)

        if succeeded:
            values: Dict[str, str] = {}
            from_file = self.read_exports(job, workspace)
            if from_file is not None:
                values.update(from_file)
            if exported:
                values.update({k: str(v) for k, v in exported.items()})
            if values or from_file is not None:
                self.variables.export(job.name, values, override=job.override_exports)
                with self._lock:
                    self._exported.add(job.name)
            pub.variables = values

        if bundle is not None:
            with self._lock:
                self._bundles[job.name] = bundle
            pub.bundle = bundle
        return pub

    # -----------------------------------------------------------------
    # reads
    # -----------------------------------------------------------------

    def bundle(self, job_name: str) -> Optional[ArtifactBundle]:
        with self._lock:
            return self._bundles.get(job_name)

    def bundles(self) -> Dict[str, ArtifactBundle]:
        with self._lock:
            return dict(self._bundles)

    def confirm(self, consumer: str, sources: Sequence[JobSpec]) -> None:
        """
        Check every declared output of `sources` is published.
        Raises MissingArtifactError naming what is absent.
        """
        missing: List[str] = []
        with self._lock:
            for src in sources:
                if src.artifacts is not None:
                    b = self._bundles.get(src.name)
                    if b is None or b.from_failed_job:
                        missing.append(f"{src.name}: artifacts")
                if src.exports is not None and src.name not in self._exported:
                    missing.append(f"{src.name}: exports")
        if missing:
            raise MissingArtifactError(
                f"Job '{consumer}' cannot start, upstream outputs missing: {missing}",
                job=consumer,
                details={"missing": missing},
            )

    def restore(self, bundles: Iterable[ArtifactBundle], dest: Path) -> List[str]:
        """Extract bundles into a consumer's workspace, in order."""
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        restored: List[str] = []
        for b in bundles:
            with tarfile.open(str(b.archive), mode="r:gz") as tar:
                _safe_extract(tar, dest, job=b.job)
            restored.extend(b.files)
        return restored

    def manifest(self, job_name: str) -> dict:
        path = self.root / self.run_id / job_name / "manifest.json"
        return json.loads(path.read_text(encoding="utf-8"))


def _safe_extract(tar: tarfile.TarFile, dest: Path, *, job: str) -> None:
    """
    Extract a bundle, refusing members that would land outside dest.

    Interpreters without tarfile extraction filters (before 3.10.12 / 3.11.4)
    rely on the member check alone.
    """
    root = dest.resolve()
    for member in tar.getmembers():
        targets = [root / member.name]
        if member.issym():
            targets.append((root / member.name).parent / member.linkname)
        elif member.islnk():
            targets.append(root / member.linkname)
        for target in targets:
            resolved = target.resolve()
            if resolved != root and root not in resolved.parents:
                raise ExecutorError(
                    f"artifact member {member.name!r} escapes the workspace",
                    job=job,
                    details={"member": member.name},
                )
    if hasattr(tarfile, "data_filter"):
        tar.extractall(path=str(root), filter="data")
    else:
        tar.extractall(path=str(root))
