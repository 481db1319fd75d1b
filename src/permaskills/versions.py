from __future__ import annotations

import operator
import re
from functools import cmp_to_key
from typing import Callable, Iterable

from .errors import ValidationError

_COMPARATOR_RE = re.compile(r"^(>=|<=|>|<|==|=)?\s*([0-9A-Za-z][0-9A-Za-z.\-+]*)$")
_SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+(?:-[0-9A-Za-z.\-]+)?(?:\+[0-9A-Za-z.\-]+)?$")

_OPERATORS: dict[str, Callable[[int, int], bool]] = {
    "=": operator.eq,
    "==": operator.eq,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}

_ANY = ("latest", "*")


def is_semver(version: str) -> bool:
    return bool(_SEMVER_RE.match(version.strip()))


def _release(version: str) -> tuple[int, int, int]:
    core = version.strip().split("+", 1)[0].split("-", 1)[0]
    parts = core.split(".") if core else []
    if not parts or len(parts) > 3 or not all(p.isdigit() for p in parts):
        raise ValueError(f"Unsupported version format: {version!r}")
    nums = [int(p) for p in parts] + [0] * (3 - len(parts))
    return nums[0], nums[1], nums[2]


def _sort_key(version: str) -> tuple:
    """
    Ordering key following semver precedence: build metadata is ignored, a release ranks
    above its pre-releases, numeric pre-release identifiers rank below alphanumeric ones.
    """
    release = _release(version)
    core = version.strip().split("+", 1)[0]
    if "-" not in core:
        return release, (1,)
    pre = [p for p in core.split("-", 1)[1].split(".") if p]
    return release, (0, *((0, int(p), "") if p.isdigit() else (1, 0, p) for p in pre))


def compare_versions(a: str, b: str) -> int:
    try:
        ka, kb = _sort_key(a), _sort_key(b)
    except ValueError:
        # Not a version we understand; fall back to plain string order.
        ka, kb = a, b  # type: ignore[assignment]
    return (ka > kb) - (ka < kb)


def sort_versions(versions: Iterable[str], *, newest_first: bool = True) -> list[str]:
    return sorted(versions, key=cmp_to_key(compare_versions), reverse=newest_first)


def _expand(token: str) -> list[str]:
    """Rewrite `^x.y.z` and `~x.y.z` into a lower and upper comparator."""
    major, minor, patch = _release(token[1:])
    lower = f">={major}.{minor}.{patch}"
    if token.startswith("~"):
        return [lower, f"<{major}.{minor + 1}.0"]
    if major:
        return [lower, f"<{major + 1}.0.0"]
    if minor:
        return [lower, f"<0.{minor + 1}.0"]
    return [lower, f"<0.0.{patch + 1}"]


def _split_specifier(specifier: str) -> list[str]:
    tokens = specifier.replace(",", " ").split()
    if not tokens:
        return ["latest"]
    out: list[str] = []
    for token in tokens:
        if token[0] not in "^~":
            out.append(token)
            continue
        try:
            out.extend(_expand(token))
        except ValueError as e:
            raise ValidationError(f"Invalid version requirement: {token!r}") from e
    return out


def version_satisfies(version: str, specifier: str | None) -> bool:
    for token in _split_specifier(specifier or ""):
        if token.lower() in _ANY:
            continue
        m = _COMPARATOR_RE.match(token)
        if not m:
            return False
        check = _OPERATORS[m.group(1) or "="]
        if not check(compare_versions(version, m.group(2)), 0):
            return False
    return True


def exact_version(specifier: str | None) -> str | None:
    """Return the pinned version when the requirement names exactly one version, else None."""
    tokens = _split_specifier(specifier or "")
    if len(tokens) != 1 or tokens[0].lower() in _ANY:
        return None
    m = _COMPARATOR_RE.match(tokens[0])
    if not m or m.group(1) not in (None, "=", "=="):
        return None
    return m.group(2)


def is_latest(specifier: str | None) -> bool:
    return all(t.lower() in _ANY for t in _split_specifier(specifier or ""))
