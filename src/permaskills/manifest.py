from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import yaml

from .errors import FileSystemError, ManifestMissingError, ValidationError
from .models import DependencyRef
from .versions import is_semver

MANIFEST_FILENAME = "SKILL.md"

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")
_MAX_DESCRIPTION = 1024

# Full schema validation lives outside this package; callers may swap in their own.
ManifestValidator = Callable[[dict[str, Any]], list[str]]


@dataclass(frozen=True)
class SkillManifest:
    name: str
    version: str
    description: str
    author: str
    tags: tuple[str, ...] = ()
    dependencies: tuple[DependencyRef, ...] = ()
    license: str | None = None


def read_front_matter(text: str) -> dict[str, Any]:
    """Return the YAML mapping between the leading `---` delimiters, or {} when there is none."""
    lines = text.lstrip("﻿").splitlines()
    if not lines or lines[0].strip() != "---":
        return {}
    for i in range(1, len(lines)):
        if lines[i].strip() in ("---", "..."):
            block = "\n".join(lines[1:i])
            break
    else:
        return {}
    try:
        data = yaml.safe_load(block)
    except yaml.YAMLError as e:
        raise ValidationError(
            f"YAML front matter is malformed: {e}",
            hint="Check SKILL.md for YAML syntax errors between the --- delimiters.",
        ) from e
    return data if isinstance(data, dict) else {}


def read_manifest_file(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ManifestMissingError(
            f"{MANIFEST_FILENAME} not found: {path}",
            hint=f"Create {MANIFEST_FILENAME} with YAML front matter (name, version, description, author).",
        ) from e
    except OSError as e:
        raise FileSystemError(f"Could not read {path}: {e}", path=str(path)) from e
    return read_front_matter(text)


def manifest_name(path: Path) -> str:
    """Canonical package name declared by an unpacked bundle's manifest."""
    data = read_manifest_file(path)
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ManifestMissingError(
            f"{MANIFEST_FILENAME} has no name field: {path}",
            hint="The bundle is malformed; ask the publisher to republish it with a name in the front matter.",
        )
    name = name.strip()
    if "/" in name or "\\" in name or name in (".", ".."):
        raise ValidationError(f"Manifest name {name!r} is not a valid directory name.")
    return name


def basic_validate(data: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    for key in ("name", "version", "description", "author"):
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"Missing required field: {key}")
    name = data.get("name")
    if isinstance(name, str) and name and not _NAME_RE.match(name):
        errors.append("Invalid name format: use lowercase letters, numbers and hyphens")
    version = data.get("version")
    if isinstance(version, str) and version and not is_semver(version):
        errors.append("Invalid version format: use semantic versioning (e.g. 1.0.0)")
    description = data.get("description")
    if isinstance(description, str) and len(description) > _MAX_DESCRIPTION:
        errors.append(f"Field description exceeds maximum length of {_MAX_DESCRIPTION} characters")
    for key in ("tags", "dependencies"):
        value = data.get(key)
        if value is not None and not isinstance(value, list):
            errors.append(f"Field {key} must be a list")
    return errors


def load_manifest(directory: Path, *, validator: ManifestValidator = basic_validate) -> SkillManifest:
    data = read_manifest_file(directory / MANIFEST_FILENAME)
    if not data:
        raise ValidationError(
            f"{MANIFEST_FILENAME} has no front matter.",
            hint="Add YAML front matter between --- delimiters at the top of the file.",
        )
    errors = validator(data)
    if errors:
        raise ValidationError(
            f"{MANIFEST_FILENAME} validation failed:\n" + "\n".join(f"  - {e}" for e in errors),
            hint=f"Fix the fields listed above in {MANIFEST_FILENAME}.",
        )

    deps = tuple(d for d in (DependencyRef.parse(x) for x in data.get("dependencies") or []) if d is not None)
    tags = tuple(str(t) for t in data.get("tags") or [])
    license_ = data.get("license")
    return SkillManifest(
        name=str(data["name"]).strip(),
        version=str(data["version"]).strip(),
        description=str(data["description"]).strip(),
        author=str(data["author"]).strip(),
        tags=tags,
        dependencies=deps,
        license=str(license_) if license_ else None,
    )
