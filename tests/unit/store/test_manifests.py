"""Tests for Tenant manifest loading."""

from pathlib import Path

import pytest
import yaml

from tenantctl.core.exceptions import ManifestError
from tenantctl.store.manifests import (
    ManifestParser,
    dump_manifests,
    load_tenant_manifests,
)


class TestManifestParser:
    """Tests for ManifestParser."""

    def test_parse_candidate(self, tenants_dir: Path) -> None:
        """Test parsing a single Tenant document."""
        records = ManifestParser().parse_file(tenants_dir / "candidate.yaml")

        assert len(records) == 1
        record = records[0]
        assert record.name == "candidate"
        assert record.generation == 1
        assert record.spec["quota"] == {"pods": 200}
        assert record.spec["costCenter"] == "cc-1234"

    def test_parse_multi_document(self, tenants_dir: Path) -> None:
        records = ManifestParser().parse_file(tenants_dir / "multi.yaml")
        assert [r.name for r in records] == ["payments", "search"]

    def test_invalid_spec_still_parses(self, tenants_dir: Path) -> None:
        """Test schema errors are left to Tenant validation."""
        records = ManifestParser().parse_file(tenants_dir / "invalid.yaml")
        assert records[0].spec["quota"]["cpu"] == "not-a-number"

    def test_wrong_kind(self, tenants_dir: Path) -> None:
        with pytest.raises(ManifestError, match="expected kind Tenant"):
            ManifestParser().parse_file(tenants_dir / "not_tenant.yaml")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestError, match="File not found"):
            ManifestParser().parse_file(tmp_path / "missing.yaml")

    def test_wrong_group(self) -> None:
        content = "apiVersion: example.com/v1\nkind: Tenant\nmetadata: {name: a}\n"
        with pytest.raises(ManifestError, match="not in group"):
            ManifestParser().parse_string(content)

    def test_missing_name(self) -> None:
        content = "apiVersion: platform.xyz.com/v1alpha1\nkind: Tenant\nspec: {}\n"
        with pytest.raises(ManifestError, match="metadata.name is required"):
            ManifestParser().parse_string(content)

    def test_yaml_syntax_error_reports_position(self) -> None:
        """Test YAML errors carry line and column."""
        content = "kind: Tenant\nmetadata:\n  name: [unclosed\n"
        with pytest.raises(ManifestError, match="line"):
            ManifestParser().parse_string(content, source="bad.yaml")

    def test_empty_stream(self) -> None:
        with pytest.raises(ManifestError, match="no Tenant documents"):
            ManifestParser().parse_string("---\n")

    def test_generation_from_metadata(self) -> None:
        content = (
            "apiVersion: platform.xyz.com/v1alpha1\nkind: Tenant\n"
            "metadata: {name: a, generation: 4}\nspec: {owner: x}\n"
        )
        assert ManifestParser().parse_string(content)[0].generation == 4


class TestLoadTenantManifests:
    """Tests for load_tenant_manifests."""

    def test_loads_several_files(self, tenants_dir: Path) -> None:
        records = load_tenant_manifests(
            tenants_dir / "candidate.yaml", tenants_dir / "multi.yaml"
        )
        assert {r.name for r in records} == {"candidate", "payments", "search"}

    def test_duplicate_names_rejected(self, tenants_dir: Path) -> None:
        path = tenants_dir / "candidate.yaml"
        with pytest.raises(ManifestError, match="declared in both"):
            load_tenant_manifests(path, path)


class TestDumpManifests:
    """Tests for dump_manifests."""

    def test_preserves_key_order(self) -> None:
        output = dump_manifests(
            [{"kind": "Namespace", "apiVersion": "v1"}, {"kind": "ResourceQuota"}]
        )
        assert output.index("kind: Namespace") < output.index("apiVersion: v1")
        assert list(yaml.safe_load_all(output))[1] == {"kind": "ResourceQuota"}
