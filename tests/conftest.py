"""Shared fixtures: a workspace on disk, a recording backend, a static lister."""

import io
import json
import tarfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from ocigraph.builds.runner import BackendResult, BuildRequest
from ocigraph.builds.service import create_runner
from ocigraph.config import Settings
from ocigraph.graph.target_graph import TargetGraph
from ocigraph.types import OutputMode, Package


class StaticFileLister:
    """File lister returning a fixed list of tracked files."""

    def __init__(self, files: list[str] | None = None) -> None:
        self.files = list(files or [])

    def tracked_files(self) -> list[str]:
        return sorted(self.files)


class RecordingBackend:
    """Backend that records requests and writes a deterministic manifest."""

    def __init__(self, fail: set[str] | None = None) -> None:
        self.fail = set(fail or ())
        self.requests: list[BuildRequest] = []

    @property
    def built(self) -> list[str]:
        return [r.package for r in self.requests]

    def contexts_for(self, package: str) -> dict[str, Path]:
        matching = [r for r in self.requests if r.package == package]
        assert matching, f"{package} was never built"
        return matching[-1].contexts

    def invoke(self, request: BuildRequest) -> BackendResult:
        self.requests.append(request)
        now = datetime.now(timezone.utc)
        if request.package in self.fail:
            return BackendResult(
                success=False,
                exit_code=1,
                log_path=request.log_path,
                started_at=now,
                finished_at=now,
                command=f"fake build {request.package}",
                error_message="Build failed with exit code 1",
                diagnostics="ERROR: failed to solve",
            )

        manifest = json.dumps(
            {"schemaVersion": 2, "name": request.package, "tag": request.tag},
            sort_keys=True,
        ).encode()
        if request.output_mode is OutputMode.ARCHIVE:
            request.dest.parent.mkdir(parents=True, exist_ok=True)
            with tarfile.open(request.dest, "w") as tar:
                info = tarfile.TarInfo("index.json")
                info.size = len(manifest)
                tar.addfile(info, io.BytesIO(manifest))
        else:
            request.dest.mkdir(parents=True, exist_ok=True)
            (request.dest / "index.json").write_bytes(manifest)
            (request.dest / "oci-layout").write_text('{"imageLayoutVersion":"1.0.0"}')

        return BackendResult(
            success=True,
            exit_code=0,
            log_path=request.log_path,
            started_at=now,
            finished_at=now,
            command=f"fake build {request.package}",
        )


def make_package(
    workspace: Path,
    name: str,
    inject_context: bool = True,
    depends_on: tuple[str, ...] = (),
    output_mode: OutputMode = OutputMode.DIRECTORY,
    sources: tuple[str, ...] | None = None,
) -> Package:
    """Create a package with a descriptor and one source file on disk."""
    image_dir = workspace / "images" / name
    image_dir.mkdir(parents=True, exist_ok=True)
    descriptor = image_dir / "Containerfile"
    if not descriptor.exists():
        descriptor.write_text(f"FROM scratch\nLABEL name={name}\n")
    source = image_dir / "main.txt"
    if not source.exists():
        source.write_text(f"{name} v1\n")
    return Package(
        name=name,
        descriptor=descriptor,
        sources=sources if sources is not None else (f"images/{name}",),
        output_mode=output_mode,
        inject_context=inject_context,
        depends_on=depends_on,
    )


class Workspace:
    """A temporary workspace with base/app1/app2 packages."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.settings = Settings(workspace=root, db_url="sqlite:///:memory:")
        self.packages = [
            make_package(root, "base", inject_context=False),
            make_package(root, "app1"),
            make_package(root, "app2"),
        ]
        self.lister = StaticFileLister(
            [
                f"images/{p.name}/{f}"
                for p in self.packages
                for f in ("Containerfile", "main.txt")
            ]
        )
        self.backend = RecordingBackend()

    @property
    def graph(self) -> TargetGraph:
        return TargetGraph(self.packages)

    def runner(self, **kwargs):
        return create_runner(
            self.settings,
            self.graph,
            backend=self.backend,
            lister=self.lister,
            **kwargs,
        )

    def run(self, targets=None, **kwargs):
        return self.runner(**kwargs).run(targets)

    def edit(self, rel_path: str, text: str) -> None:
        (self.root / rel_path).write_text(text)

    def manifest(self, name: str) -> Path:
        return self.settings.out_path / name / "index.json"


@pytest.fixture
def workspace(tmp_path: Path) -> Workspace:
    """Workspace with a base package and two context-injected apps."""
    return Workspace(tmp_path)


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()
