from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Union

from .errors import ValidationError

CONTENT_ID_LENGTH = 43
_CONTENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")


def is_valid_content_id(value: str) -> bool:
    return bool(isinstance(value, str) and _CONTENT_ID_RE.match(value))


def parse_package_spec(value: str) -> tuple[str, str | None]:
    """Split `name` or `name@version` into (name, version)."""
    raw = value.strip()
    if not raw:
        raise ValidationError("Invalid package name ''. Expected <name> or <name>@<version>.")
    name, sep, version = raw.partition("@")
    name = name.strip()
    version = version.strip()
    if not name or any(c.isspace() for c in name):
        raise ValidationError(f"Invalid package name {value!r}. Expected <name> or <name>@<version>.")
    if sep and not version:
        raise ValidationError(f"Missing version after '@' in {value!r}.")
    return name, (version or None)


@dataclass(frozen=True)
class DependencyRef:
    name: str
    version_requirement: str | None = None

    def __str__(self) -> str:
        if self.version_requirement:
            return f"{self.name}@{self.version_requirement}"
        return self.name

    @classmethod
    def parse(cls, raw: Any) -> "DependencyRef | None":
        if isinstance(raw, str):
            spec = raw.strip()
            if not spec:
                return None
            name, _, req = spec.partition("@")
            return cls(name=name.strip(), version_requirement=req.strip() or None)
        if isinstance(raw, dict) and isinstance(raw.get("name"), str) and raw["name"].strip():
            req = raw.get("version") or raw.get("version_requirement")
            req_s = req.strip() if isinstance(req, str) and req.strip() else None
            return cls(name=raw["name"].strip(), version_requirement=req_s)
        return None


def _str_list(raw: Any) -> list[Any]:
    # Registry tags carry JSON-encoded arrays; payloads carry real lists.
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    return list(raw) if isinstance(raw, list) else []


def _as_int(raw: Any) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class SkillMetadata:
    name: str
    version: str
    description: str = ""
    author: str = ""
    owner: str = ""
    tags: tuple[str, ...] = ()
    dependencies: tuple[DependencyRef, ...] = ()
    content_id: str = ""
    license: str | None = None
    published_at: int = 0
    updated_at: int = 0

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"

    @classmethod
    def from_payload(cls, obj: Any) -> "SkillMetadata":
        """Decode one registry skill object. Raises ValidationError when name or version is missing."""
        if not isinstance(obj, dict):
            raise ValidationError(f"Registry returned a non-object skill payload: {obj!r}")
        name = obj.get("name")
        version = obj.get("version")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Registry skill payload has no name.")
        if not isinstance(version, str) or not version.strip():
            raise ValidationError(f"Registry skill payload for {name!r} has no version.")

        deps = tuple(d for d in (DependencyRef.parse(x) for x in _str_list(obj.get("dependencies"))) if d is not None)
        tags = tuple(str(t) for t in _str_list(obj.get("tags")) if isinstance(t, str))
        license_ = obj.get("license")
        return cls(
            name=name.strip(),
            version=version.strip(),
            description=str(obj.get("description") or ""),
            author=str(obj.get("author") or ""),
            owner=str(obj.get("owner") or ""),
            tags=tags,
            dependencies=deps,
            content_id=str(obj.get("arweaveTxId") or obj.get("content_id") or ""),
            license=license_ if isinstance(license_, str) and license_ else None,
            published_at=_as_int(obj.get("publishedAt")),
            updated_at=_as_int(obj.get("updatedAt")),
        )

    def to_payload(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "author": self.author,
            "owner": self.owner,
            "tags": list(self.tags),
            "dependencies": [str(d) for d in self.dependencies],
            "arweaveTxId": self.content_id,
            "publishedAt": self.published_at,
            "updatedAt": self.updated_at,
        }
        if self.license:
            out["license"] = self.license
        return out


# Registry answers, decoded once at the client boundary.


@dataclass(frozen=True)
class Found:
    payload: Any
    action: str | None = None


@dataclass(frozen=True)
class NotFound:
    message: str | None = None


@dataclass(frozen=True)
class Failed:
    message: str


RegistryResult = Union[Found, NotFound, Failed]


@dataclass(frozen=True)
class RegistrationReceipt:
    message_id: str
    name: str
    version: str
    action: str


@dataclass(frozen=True)
class RegistryPage:
    skills: tuple[SkillMetadata, ...]
    total: int
    limit: int
    offset: int
    has_next_page: bool


@dataclass(frozen=True)
class DependencyNode:
    name: str
    version: str
    content_id: str
    depth: int
    children: tuple[int, ...] = ()  # indexes into DependencyPlan.nodes
    is_direct: bool = False
    from_cache: bool = False
    dependencies: tuple[DependencyRef, ...] = ()

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True)
class DependencyPlan:
    """
    Arena of resolved nodes plus the install order.

    `nodes` keeps discovery order, `order` lists node indexes so that every node comes after
    all of its children.
    """

    nodes: tuple[DependencyNode, ...]
    order: tuple[int, ...]
    root: int = 0

    def ordered(self) -> list[DependencyNode]:
        return [self.nodes[i] for i in self.order]

    def __iter__(self) -> Iterator[DependencyNode]:
        return iter(self.ordered())

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def root_node(self) -> DependencyNode:
        return self.nodes[self.root]

    @property
    def total_count(self) -> int:
        return len(self.nodes)

    @property
    def cached_count(self) -> int:
        return sum(1 for n in self.nodes if n.from_cache)

    @property
    def max_depth(self) -> int:
        return max((n.depth for n in self.nodes), default=0)

    def children_of(self, node: DependencyNode) -> list[DependencyNode]:
        return [self.nodes[i] for i in node.children]


@dataclass(frozen=True)
class InstalledRecord:
    name: str
    version: str
    content_id: str
    installed_at: int  # epoch milliseconds
    install_path: str
    dependencies: tuple[str, ...] = ()  # name@version
    is_direct: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "arweaveTxId": self.content_id,
            "installedAt": self.installed_at,
            "installedPath": self.install_path,
            "dependencies": list(self.dependencies),
            "isDirectDependency": self.is_direct,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "InstalledRecord | None":
        if not isinstance(raw, dict):
            return None
        name = raw.get("name")
        version = raw.get("version")
        if not isinstance(name, str) or not isinstance(version, str):
            return None
        deps: list[str] = []
        for d in raw.get("dependencies") or []:
            if isinstance(d, str):
                deps.append(d)
            elif isinstance(d, dict) and isinstance(d.get("name"), str):
                deps.append(f"{d['name']}@{d.get('version', '')}".rstrip("@"))
        return cls(
            name=name,
            version=version,
            content_id=str(raw.get("arweaveTxId") or ""),
            installed_at=_as_int(raw.get("installedAt")),
            install_path=str(raw.get("installedPath") or ""),
            dependencies=tuple(deps),
            is_direct=bool(raw.get("isDirectDependency", False)),
        )


class DurabilityState(str, Enum):
    PENDING = "pending"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class UploadResult:
    content_id: str
    cost: int  # winston
    size: int
    free_tier: bool


@dataclass(frozen=True)
class BundleMetadata:
    name: str
    version: str
    extra_tags: dict[str, str] = field(default_factory=dict)
