"""Tenant manifest loading.

Reads Tenant objects from YAML in the same ``apiVersion/kind/metadata/spec``
form that ``kubectl apply`` accepts. A file may hold several documents.
"""

from pathlib import Path
from typing import Any

import yaml

from tenantctl.api.tenant import TenantRecord
from tenantctl.core.exceptions import ManifestError

TENANT_API_GROUP = "platform.xyz.com"
TENANT_KIND = "Tenant"


class ManifestParser:
    """Parse Tenant manifests from files or strings."""

    def __init__(self, api_group: str = TENANT_API_GROUP) -> None:
        self.api_group = api_group

    def parse_file(self, file_path: str | Path) -> list[TenantRecord]:
        """Parse every Tenant document in a YAML file.

        Raises:
            ManifestError: If the file is missing, unparsable or not a Tenant.
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise ManifestError(f"File not found: {file_path}")

        try:
            content = file_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ManifestError(f"Failed to read {file_path}: {e}") from e

        return self.parse_string(content, source=str(file_path))

    def parse_string(
        self, content: str, source: str = "<string>"
    ) -> list[TenantRecord]:
        """Parse every Tenant document in a YAML string."""
        try:
            documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
        except yaml.MarkedYAMLError as e:
            mark = e.problem_mark
            line = mark.line + 1 if mark else None
            column = mark.column + 1 if mark else None
            raise ManifestError(
                f"{source}: YAML parsing error at line {line}, column {column}: "
                f"{e.problem}"
            ) from e
        except yaml.YAMLError as e:
            raise ManifestError(f"{source}: YAML parsing error: {e}") from e

        if not documents:
            raise ManifestError(f"{source}: no Tenant documents found")

        return [
            self._to_record(doc, source, index)
            for index, doc in enumerate(documents, start=1)
        ]

    def _to_record(self, doc: Any, source: str, index: int) -> TenantRecord:
        where = f"{source} (document {index})"
        if not isinstance(doc, dict):
            raise ManifestError(f"{where}: expected a mapping")

        kind = doc.get("kind")
        if kind != TENANT_KIND:
            raise ManifestError(f"{where}: expected kind {TENANT_KIND}, got {kind!r}")

        api_version = str(doc.get("apiVersion", ""))
        if api_version.split("/", 1)[0] != self.api_group:
            raise ManifestError(
                f"{where}: apiVersion {api_version!r} is not in group {self.api_group}"
            )

        metadata = doc.get("metadata") or {}
        name = metadata.get("name") if isinstance(metadata, dict) else None
        if not name:
            raise ManifestError(f"{where}: metadata.name is required")

        spec = doc.get("spec") or {}
        if not isinstance(spec, dict):
            raise ManifestError(f"{where}: spec must be a mapping")

        return TenantRecord(
            name=str(name),
            generation=int(metadata.get("generation", 1)),
            uid=metadata.get("uid"),
            spec=spec,
        )


def load_tenant_manifests(*paths: str | Path) -> list[TenantRecord]:
    """Load Tenants from one or more files.

    Raises:
        ManifestError: On unreadable files or a name declared twice.
    """
    parser = ManifestParser()
    records: list[TenantRecord] = []
    seen: dict[str, str] = {}
    for path in paths:
        for record in parser.parse_file(path):
            if record.name in seen:
                raise ManifestError(
                    f"Tenant {record.name!r} declared in both {seen[record.name]} "
                    f"and {path}"
                )
            seen[record.name] = str(path)
            records.append(record)
    return records


def dump_manifests(manifests: list[dict[str, Any]]) -> str:
    """Render objects as a multi-document YAML stream."""
    return yaml.safe_dump_all(manifests, sort_keys=False, default_flow_style=False)
