from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from .bundle import unpack_bundle
from .errors import FileSystemError, InstallError, SkillsError, ValidationError
from .lockfile import LockLedger, now_ms
from .manifest import MANIFEST_FILENAME, read_manifest_file
from .models import DependencyNode, DependencyPlan, InstalledRecord, is_valid_content_id, parse_package_spec
from .resolver import DEFAULT_MAX_DEPTH, SkillSource, resolve
from .transport import DownloadProgress

log = logging.getLogger(__name__)

GLOBAL_INSTALL_DIR = Path("~/.claude/skills")
LOCAL_INSTALL_DIR = Path(".claude/skills")

# Progress steps, in the order an install reports them.
STEP_QUERY = "query-registry"
STEP_RESOLVE = "resolve-dependencies"
STEP_DOWNLOAD = "download-bundle"
STEP_EXTRACT = "extract-bundle"
STEP_LEDGER = "update-lock-file"
STEP_COMPLETE = "complete"


class BundleSource(Protocol):
    def download(
        self, content_id: str, *, on_progress: Callable[[DownloadProgress], None] | None = None
    ) -> bytes: ...


@dataclass(frozen=True)
class InstallProgress:
    step: str
    message: str
    package: str | None = None
    current: int | None = None
    total: int | None = None


@dataclass(frozen=True)
class InstallResult:
    name: str
    version: str
    install_root: Path
    installed: tuple[InstalledRecord, ...]
    skipped: tuple[str, ...]
    plan: DependencyPlan
    ledger_path: Path | None
    warnings: tuple[str, ...]


def resolve_install_root(
    *, global_: bool = False, install_dir: str | Path | None = None, cwd: Path | None = None
) -> Path:
    if install_dir is not None:
        return Path(install_dir).expanduser().resolve()
    if global_:
        return GLOBAL_INSTALL_DIR.expanduser().resolve()
    return ((cwd or Path.cwd()) / LOCAL_INSTALL_DIR).resolve()


class InstallService:
    def __init__(
        self,
        registry: SkillSource,
        transport: BundleSource,
        *,
        install_root: Path,
        max_depth: int = DEFAULT_MAX_DEPTH,
        on_progress: Callable[[InstallProgress], None] | None = None,
        confirm: Callable[[Path], bool] | None = None,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.install_root = install_root
        self.max_depth = max_depth
        self.ledger = LockLedger.for_install_root(install_root)
        self._on_progress = on_progress
        self._confirm = confirm

    def _emit(self, step: str, message: str, **kwargs: object) -> None:
        log.debug("%s: %s", step, message)
        if self._on_progress is not None:
            self._on_progress(InstallProgress(step=step, message=message, **kwargs))  # type: ignore[arg-type]

    def plan(self, spec: str, *, force: bool = False) -> DependencyPlan:
        name, version = parse_package_spec(spec)
        self._emit(STEP_QUERY, f"Looking up {spec} in the registry", package=name)
        plan = resolve(
            self.registry,
            name,
            version=version,
            max_depth=self.max_depth,
            skip_installed=not force,
            locked=self.ledger.versions(),
        )
        self._emit(
            STEP_RESOLVE,
            f"Resolved {plan.total_count} package(s), {plan.cached_count} already installed",
            package=name,
            total=plan.total_count,
        )
        return plan

    def install(self, spec: str, *, force: bool = False, skip_lock: bool = False) -> InstallResult:
        """
        Install a skill and its dependencies, dependencies first.

        Each package is recorded in the ledger as soon as it is extracted, so a failure part-way
        leaves already installed packages usable and recorded. A failing package raises
        `InstallError` naming it.
        """
        plan = self.plan(spec, force=force)
        todo = [n for n in plan.ordered() if not n.from_cache]
        installed: list[InstalledRecord] = []
        skipped: list[str] = [n.key for n in plan.ordered() if n.from_cache]
        warnings: list[str] = []

        for i, node in enumerate(todo, start=1):
            if not force and self._installed_version(node.name) == node.version:
                # Present on disk but not in the ledger; record it without downloading again.
                log.debug("%s already present in %s", node.key, self.install_root)
                record = self._record_for(plan, node, self.install_root / node.name)
                skipped.append(node.key)
            else:
                try:
                    record = self._install_node(plan, node, position=(i, len(todo)), force=force)
                except SkillsError as e:
                    raise InstallError(node.key, e) from e
                installed.append(record)
            if not skip_lock:
                warning = self._record(record)
                if warning:
                    warnings.append(warning)

        root = plan.root_node
        self._emit(STEP_COMPLETE, f"Installed {root.key}", package=root.name, total=len(installed))
        return InstallResult(
            name=root.name,
            version=root.version,
            install_root=self.install_root,
            installed=tuple(installed),
            skipped=tuple(skipped),
            plan=plan,
            ledger_path=None if skip_lock else self.ledger.path,
            warnings=tuple(warnings),
        )

    def _install_node(
        self, plan: DependencyPlan, node: DependencyNode, *, position: tuple[int, int], force: bool
    ) -> InstalledRecord:
        current, total = position
        if not is_valid_content_id(node.content_id):
            raise ValidationError(
                f"Registry entry for {node.key} has no valid bundle identifier.",
                hint="The skill was published incorrectly; ask the publisher to republish it.",
            )

        self._emit(STEP_DOWNLOAD, f"Downloading {node.key}", package=node.name, current=current, total=total)
        data = self.transport.download(node.content_id)

        self._emit(STEP_EXTRACT, f"Extracting {node.key}", package=node.name, current=current, total=total)
        unpacked = unpack_bundle(data, self.install_root, force=force, confirm=self._confirm)
        if unpacked.name != node.name:
            log.warning("bundle for %s declares name %r", node.key, unpacked.name)
        return self._record_for(plan, node, unpacked.path)

    def _installed_version(self, name: str) -> str | None:
        """Version declared by an already extracted `install_root/<name>/SKILL.md`, if any."""
        manifest = self.install_root / name / MANIFEST_FILENAME
        if not manifest.is_file():
            return None
        try:
            version = read_manifest_file(manifest).get("version")
        except (SkillsError, UnicodeDecodeError) as e:
            log.debug("ignoring unreadable %s: %s", manifest, e)
            return None
        return None if version is None else str(version)

    def _record_for(self, plan: DependencyPlan, node: DependencyNode, path: Path) -> InstalledRecord:
        return InstalledRecord(
            name=node.name,
            version=node.version,
            content_id=node.content_id,
            installed_at=now_ms(),
            install_path=str(path.expanduser().resolve()),
            dependencies=tuple(c.key for c in plan.children_of(node)),
            is_direct=node.is_direct,
        )

    def _record(self, record: InstalledRecord) -> str | None:
        self._emit(STEP_LEDGER, f"Recording {record.name}@{record.version}", package=record.name)
        try:
            self.ledger.update(record)
        except SkillsError as e:
            # The skill stays installed; only its ledger entry is missing.
            log.warning("could not record %s in %s: %s", record.name, self.ledger.path, e)
            return f"Installed {record.name} but could not update {self.ledger.path}: {e}"
        return None


def uninstall_skill(install_root: Path, name: str) -> Path:
    """Remove `install_root/<name>` and its ledger record."""
    if not name or "/" in name or "\\" in name or name in (".", ".."):
        raise ValidationError(f"Invalid skill name {name!r}.")
    ledger = LockLedger.for_install_root(install_root)
    record = ledger.get(name)
    target = install_root / name
    if not target.exists() and record is None:
        raise ValidationError(f"Skill {name} is not installed in {install_root}.")
    if target.exists():
        try:
            shutil.rmtree(target)
        except OSError as e:
            raise FileSystemError(f"Could not remove {target}: {e}", path=str(target)) from e
    ledger.remove(name)
    log.debug("removed %s from %s", name, install_root)
    return target
