"""Tests for offline Stack manifest loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from stack_controller.config import MAX_MANIFEST_FILE_SIZE_BYTES
from stack_controller.manifest import ManifestLoadError, load_manifest
from stack_controller.models import InlineGitRepo, SourceReference

VALID_MANIFEST = """\
apiVersion: pulumi.com/v1
kind: Stack
metadata:
  name: infra
  namespace: platform
spec:
  stack: acme/infra/dev
  projectRepo: https://github.com/acme/infra.git
  branch: main
  destroyOnFinalize: true
"""


def write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "stack.yaml"
    path.write_text(content)
    return path


class TestLoadManifest:
    """Tests for load_manifest."""

    def test_valid_git_stack(self, tmp_path: Path) -> None:
        stack = load_manifest(write(tmp_path, VALID_MANIFEST))

        assert stack.key == "platform/infra"
        assert stack.spec.destroy_on_finalize is True
        assert isinstance(stack.spec.git_repo, InlineGitRepo)

    def test_valid_source_ref_stack(self, tmp_path: Path) -> None:
        manifest = yaml.safe_load(VALID_MANIFEST)
        for field in ("projectRepo", "branch"):
            del manifest["spec"][field]
        manifest["spec"]["sourceRef"] = {
            "apiVersion": "source.toolkit.fluxcd.io/v1",
            "kind": "GitRepository",
            "name": "infra",
        }

        stack = load_manifest(write(tmp_path, yaml.safe_dump(manifest)))

        assert isinstance(stack.spec.source_ref, SourceReference)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError, match="not found"):
            load_manifest(tmp_path / "absent.yaml")

    def test_too_large(self, tmp_path: Path) -> None:
        path = write(tmp_path, VALID_MANIFEST + "#" * MAX_MANIFEST_FILE_SIZE_BYTES)

        with pytest.raises(ManifestLoadError, match="maximum size"):
            load_manifest(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError, match="Invalid YAML"):
            load_manifest(write(tmp_path, "spec: [unclosed"))

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError, match="mapping"):
            load_manifest(write(tmp_path, "- a\n- b\n"))

    def test_wrong_kind(self, tmp_path: Path) -> None:
        content = VALID_MANIFEST.replace("kind: Stack", "kind: Deployment")

        with pytest.raises(ManifestLoadError, match="Expected a Stack"):
            load_manifest(write(tmp_path, content))

    def test_wrong_group(self, tmp_path: Path) -> None:
        content = VALID_MANIFEST.replace("pulumi.com/v1", "apps/v1")

        with pytest.raises(ManifestLoadError, match="Expected a Stack"):
            load_manifest(write(tmp_path, content))

    def test_missing_branch_and_commit(self, tmp_path: Path) -> None:
        content = VALID_MANIFEST.replace("  branch: main\n", "")

        with pytest.raises(ManifestLoadError, match="Validation failed"):
            load_manifest(write(tmp_path, content))

    def test_invalid_resync_frequency(self, tmp_path: Path) -> None:
        content = VALID_MANIFEST + "  resyncFrequencySeconds: -5\n"

        with pytest.raises(ManifestLoadError, match="Validation failed"):
            load_manifest(write(tmp_path, content))
