from __future__ import annotations

import gzip
import hashlib
import io
import logging
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Protocol

from .config import DEFAULT_MAX_BUNDLE_SIZE
from .errors import FileSystemError, InstallConflictError, ManifestMissingError, ValidationError
from .manifest import MANIFEST_FILENAME, manifest_name

log = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
BUNDLE_CONTENT_TYPE = "application/x-tar+gzip"

# Directory/file names to skip anywhere in the tree.
DEFAULT_EXCLUDE_NAMES = {
    ".git",
    ".hg",
    ".svn",
    ".DS_Store",
    "Thumbs.db",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    ".venv",
    "venv",
    "node_modules",
    ".idea",
    ".vscode",
}

# Hidden files are skipped except these.
ALLOWED_HIDDEN_NAMES = {".skillsrc"}


@dataclass(frozen=True)
class PackProgress:
    current: int
    total: int
    file: str


@dataclass(frozen=True)
class Bundle:
    root: Path
    data: bytes
    sha256: str
    size: int  # compressed bytes
    file_count: int
    total_size: int  # uncompressed bytes of the packed files
    exceeded_limit: bool
    files: tuple[str, ...]


@dataclass(frozen=True)
class UnpackResult:
    name: str
    path: Path
    file_count: int
    uncompressed_size: int
    replaced: bool


class DiskUsage(Protocol):
    @property
    def free(self) -> int: ...


def format_size(n: int) -> str:
    if n < 1024:
        return f"{n} bytes"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    return f"{n / (1024 * 1024):.1f} MB"


def _should_exclude(rel: PurePosixPath) -> bool:
    for part in rel.parts:
        if part in DEFAULT_EXCLUDE_NAMES:
            return True
        if part.startswith(".") and part not in ALLOWED_HIDDEN_NAMES:
            return True
    return False


def collect_files(root: Path) -> list[str]:
    files: list[str] = []
    for p in root.rglob("*"):
        rel = PurePosixPath(p.relative_to(root).as_posix())
        if _should_exclude(rel):
            continue
        if p.is_symlink():
            # Avoid surprising content and portability issues.
            continue
        if p.is_file():
            files.append(str(rel))
    files.sort()
    return files


def pack_bundle(
    root: Path,
    *,
    on_progress: Callable[[PackProgress], None] | None = None,
    max_bundle_size: int = DEFAULT_MAX_BUNDLE_SIZE,
) -> Bundle:
    root = root.expanduser().resolve()
    if not root.exists():
        raise FileSystemError(f"Directory not found: {root}", path=str(root), hint="Check the skill directory path.")
    if not root.is_dir():
        raise ValidationError(f"Not a directory: {root}", hint="Pass the directory that contains SKILL.md.")
    skill_md = root / MANIFEST_FILENAME
    if not skill_md.is_file():
        raise ManifestMissingError(
            f"Missing required file: {skill_md}",
            hint=f"Create {MANIFEST_FILENAME} with YAML front matter in the skill directory.",
        )

    try:
        files = collect_files(root)
    except PermissionError as e:
        raise FileSystemError(f"Permission denied reading {root}", path=str(root), hint="Check read permissions.") from e

    buf = io.BytesIO()
    total_size = 0
    # Fixed gzip/tar metadata so identical trees pack to identical bytes.
    with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0, compresslevel=6) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tf:
            for i, rel in enumerate(files, start=1):
                path = root / rel
                content = path.read_bytes()
                info = tarfile.TarInfo(name=rel)
                info.size = len(content)
                info.mtime = 0
                info.mode = 0o755 if os.access(path, os.X_OK) else 0o644
                info.uid = info.gid = 0
                info.uname = info.gname = ""
                tf.addfile(info, io.BytesIO(content))
                total_size += len(content)
                if on_progress is not None:
                    on_progress(PackProgress(current=i, total=len(files), file=rel))

    data = buf.getvalue()
    exceeded = len(data) > max_bundle_size
    if exceeded:
        log.warning("bundle for %s is %s, above the %s soft limit", root.name, format_size(len(data)), format_size(max_bundle_size))

    return Bundle(
        root=root,
        data=data,
        sha256=hashlib.sha256(data).hexdigest(),
        size=len(data),
        file_count=len(files),
        total_size=total_size,
        exceeded_limit=exceeded,
        files=tuple(files),
    )


def is_gzip(data: bytes) -> bool:
    return data[:2] == GZIP_MAGIC


def _open_archive(data: bytes) -> tuple[tarfile.TarFile, list[tarfile.TarInfo]]:
    if not is_gzip(data):
        raise ValidationError(
            "Bundle is not a gzip-compressed archive (bad magic header).",
            hint="The downloaded content is not a skill bundle; check the content identifier.",
        )
    try:
        tf = tarfile.open(fileobj=io.BytesIO(data), mode="r:gz")
        members = tf.getmembers()
    except (tarfile.TarError, EOFError, OSError) as e:
        raise ValidationError(f"Bundle archive is corrupt: {e}", hint="Download the bundle again.") from e
    return tf, members


def _check_member(info: tarfile.TarInfo, dest: Path) -> Path:
    name = info.name
    if name.startswith("/") or PurePosixPath(name).is_absolute():
        raise ValidationError(f"Archive contains an absolute path entry: {name!r}")
    if not (info.isfile() or info.isdir()):
        raise ValidationError(f"Archive contains an unsupported entry (link or device): {name!r}")
    target = (dest / name).resolve()
    base = dest.resolve()
    if target != base and not str(target).startswith(str(base) + os.sep):
        raise ValidationError(f"Archive contains an invalid path entry: {name!r}")
    return target


def _safe_extract(tf: tarfile.TarFile, members: list[tarfile.TarInfo], dest: Path) -> int:
    dest.mkdir(parents=True, exist_ok=True)
    count = 0
    for info in members:
        if not info.name or info.name in (".", "./"):
            continue
        target = _check_member(info, dest)
        if info.isdir():
            target.mkdir(parents=True, exist_ok=True)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        src = tf.extractfile(info)
        if src is None:
            continue
        with src, target.open("wb") as out:
            shutil.copyfileobj(src, out)
        if info.mode & 0o111:
            target.chmod(0o755)
        count += 1
    return count


def _source_root(unpack_root: Path) -> Path:
    if (unpack_root / MANIFEST_FILENAME).is_file():
        return unpack_root
    children = list(unpack_root.iterdir())
    if len(children) == 1 and children[0].is_dir() and (children[0] / MANIFEST_FILENAME).is_file():
        return children[0]
    raise ManifestMissingError(
        f"Bundle does not contain {MANIFEST_FILENAME} at its root.",
        hint="The bundle is malformed; ask the publisher to republish it.",
    )


def unpack_bundle(
    data: bytes,
    install_root: Path,
    *,
    force: bool = False,
    confirm: Callable[[Path], bool] | None = None,
    disk_usage: Callable[[Path], DiskUsage] = shutil.disk_usage,
) -> UnpackResult:
    """
    Extract a bundle into `install_root/<manifest name>`.

    Nothing under `install_root` changes unless every check passes; the temporary extraction
    directory is removed on every path.
    """
    tf, members = _open_archive(data)
    with tf:
        uncompressed = sum(m.size for m in members if m.isfile())

        install_root = install_root.expanduser().resolve()
        try:
            install_root.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise FileSystemError(
                f"Permission denied creating {install_root}",
                path=str(install_root),
                hint="Check directory permissions or choose a different install location.",
            ) from e

        free = disk_usage(install_root).free
        if free < uncompressed:
            raise FileSystemError(
                f"Not enough disk space: bundle needs {format_size(uncompressed)}, {format_size(free)} available.",
                path=str(install_root),
                hint="Free up disk space and retry.",
            )

        try:
            tmp = Path(tempfile.mkdtemp(prefix=".permaskills-", dir=install_root))
        except PermissionError as e:
            raise FileSystemError(
                f"Permission denied writing to {install_root}",
                path=str(install_root),
                hint="Check directory permissions or choose a different install location.",
            ) from e

        try:
            unpack_root = tmp / "unpacked"
            file_count = _safe_extract(tf, members, unpack_root)
            source_root = _source_root(unpack_root)
            name = manifest_name(source_root / MANIFEST_FILENAME)

            target = install_root / name
            replaced = target.exists()
            if replaced and not force and not (confirm is not None and confirm(target)):
                raise InstallConflictError(f"{target} already exists.", path=str(target))

            _commit(source_root, target, backup=tmp / "previous")
        except OSError as e:
            raise FileSystemError(f"Failed to extract bundle into {install_root}: {e}", path=str(install_root)) from e
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

    log.debug("extracted %s (%d files) to %s", name, file_count, target)
    return UnpackResult(name=name, path=target, file_count=file_count, uncompressed_size=uncompressed, replaced=replaced)


def _commit(source: Path, target: Path, *, backup: Path) -> None:
    had_existing = target.exists()
    if had_existing:
        target.rename(backup)
    try:
        source.rename(target)
    except OSError:
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)
        if had_existing and backup.exists():
            backup.rename(target)
        raise
