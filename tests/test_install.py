import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from permaskills.bundle import pack_bundle
from permaskills.errors import (
    FileSystemError,
    InstallConflictError,
    InstallError,
    NetworkError,
    ValidationError,
)
from permaskills.install import (
    STEP_COMPLETE,
    STEP_DOWNLOAD,
    STEP_EXTRACT,
    STEP_LEDGER,
    STEP_QUERY,
    STEP_RESOLVE,
    InstallService,
    resolve_install_root,
    uninstall_skill,
)
from permaskills.lockfile import LockLedger
from permaskills.models import DependencyRef, SkillMetadata


def _cid(name: str) -> str:
    return (name.replace("-", "") + "0" * 43)[:43]


class FakeRegistry:
    def __init__(self, *skills: SkillMetadata) -> None:
        self._skills = {s.name: s for s in skills}

    def get_skill(self, name: str, version: str | None = None) -> SkillMetadata | None:
        s = self._skills.get(name)
        if s is None or (version is not None and version != s.version):
            return None
        return s

    def get_versions(self, name: str) -> list[str]:
        s = self._skills.get(name)
        return [s.version] if s else []


class FakeTransport:
    def __init__(self, bundles: dict[str, bytes], *, missing: set[str] | None = None) -> None:
        self._bundles = bundles
        self._missing = missing or set()
        self.downloads: list[str] = []

    def download(self, content_id: str, *, on_progress=None) -> bytes:
        self.downloads.append(content_id)
        if content_id in self._missing:
            raise NetworkError("gone", error_type=NetworkError.NOT_FOUND, hint="wait and retry")
        return self._bundles[content_id]


class InstallTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.tmp = Path(self._td.name)
        self.install_root = self.tmp / "project" / ".claude" / "skills"
        self.bundles: dict[str, bytes] = {}
        self.events = []

    def tearDown(self) -> None:
        self._td.cleanup()

    def add_skill(self, name: str, version: str = "1.0.0", deps: tuple[str, ...] = ()) -> SkillMetadata:
        src = self.tmp / "src" / name
        src.mkdir(parents=True)
        (src / "SKILL.md").write_text(
            f"---\nname: {name}\nversion: {version}\ndescription: {name}\nauthor: Tester\n---\n",
            encoding="utf-8",
        )
        (src / "notes.txt").write_text(f"{name}\n", encoding="utf-8")
        self.bundles[_cid(name)] = pack_bundle(src).data
        return SkillMetadata(
            name=name,
            version=version,
            dependencies=tuple(DependencyRef.parse(d) for d in deps),
            content_id=_cid(name),
        )

    def service(self, registry, transport) -> InstallService:
        return InstallService(registry, transport, install_root=self.install_root, on_progress=self.events.append)


class TestInstallService(InstallTestCase):
    def test_install_single_skill_writes_one_ledger_record(self) -> None:
        skill = self.add_skill("pdf-tools")
        transport = FakeTransport(self.bundles)
        result = self.service(FakeRegistry(skill), transport).install("pdf-tools")

        ledger = LockLedger.for_install_root(self.install_root)
        records = ledger.read()
        self.assertEqual(list(records), ["pdf-tools"])
        rec = records["pdf-tools"]
        self.assertEqual(rec.version, "1.0.0")
        self.assertEqual(rec.content_id, _cid("pdf-tools"))
        self.assertTrue(rec.is_direct)
        self.assertEqual(Path(rec.install_path), (self.install_root / "pdf-tools").resolve())
        self.assertTrue((self.install_root / "pdf-tools" / "SKILL.md").is_file())
        self.assertEqual(ledger.path, (self.tmp / "project" / ".claude" / "skills-lock.json").resolve())
        self.assertEqual(result.ledger_path, ledger.path)
        self.assertEqual(len(result.installed), 1)

    def test_dependencies_install_first_and_are_recorded(self) -> None:
        base = self.add_skill("base-utils")
        app = self.add_skill("pdf-tools", deps=("base-utils",))
        transport = FakeTransport(self.bundles)
        self.service(FakeRegistry(app, base), transport).install("pdf-tools")

        self.assertEqual(transport.downloads, [_cid("base-utils"), _cid("pdf-tools")])
        records = LockLedger.for_install_root(self.install_root).read()
        self.assertFalse(records["base-utils"].is_direct)
        self.assertTrue(records["pdf-tools"].is_direct)
        self.assertEqual(records["pdf-tools"].dependencies, ("base-utils@1.0.0",))

        steps = [e.step for e in self.events]
        self.assertEqual(steps[:2], [STEP_QUERY, STEP_RESOLVE])
        self.assertEqual(steps[2:5], [STEP_DOWNLOAD, STEP_EXTRACT, STEP_LEDGER])
        self.assertEqual(steps[-1], STEP_COMPLETE)

    def test_reinstall_skips_packages_already_in_ledger(self) -> None:
        base = self.add_skill("base-utils")
        app = self.add_skill("pdf-tools", deps=("base-utils",))
        registry = FakeRegistry(app, base)
        transport = FakeTransport(self.bundles)
        self.service(registry, transport).install("pdf-tools")

        result = self.service(registry, transport).install("pdf-tools")
        self.assertEqual(len(transport.downloads), 2)
        self.assertEqual(result.installed, ())
        self.assertEqual(set(result.skipped), {"base-utils@1.0.0", "pdf-tools@1.0.0"})

        result = self.service(registry, transport).install("pdf-tools", force=True)
        self.assertEqual(len(transport.downloads), 4)
        self.assertEqual(len(result.installed), 2)

    def test_failure_names_package_and_keeps_installed_siblings(self) -> None:
        base = self.add_skill("base-utils")
        app = self.add_skill("pdf-tools", deps=("base-utils",))
        transport = FakeTransport(self.bundles, missing={_cid("pdf-tools")})

        with self.assertRaises(InstallError) as ctx:
            self.service(FakeRegistry(app, base), transport).install("pdf-tools")

        self.assertEqual(ctx.exception.package, "pdf-tools@1.0.0")
        self.assertEqual(ctx.exception.kind, "network")
        self.assertIsInstance(ctx.exception.cause, NetworkError)
        self.assertTrue((self.install_root / "base-utils").is_dir())
        self.assertEqual(list(LockLedger.for_install_root(self.install_root).read()), ["base-utils"])

    def test_ledger_failure_is_downgraded_to_warning(self) -> None:
        skill = self.add_skill("pdf-tools")
        with patch.object(LockLedger, "update", side_effect=FileSystemError("read-only filesystem")):
            result = self.service(FakeRegistry(skill), FakeTransport(self.bundles)).install("pdf-tools")

        self.assertTrue((self.install_root / "pdf-tools").is_dir())
        self.assertEqual(len(result.warnings), 1)
        self.assertIn("read-only filesystem", result.warnings[0])

    def test_skip_lock_leaves_no_ledger(self) -> None:
        skill = self.add_skill("pdf-tools")
        result = self.service(FakeRegistry(skill), FakeTransport(self.bundles)).install("pdf-tools", skip_lock=True)
        self.assertIsNone(result.ledger_path)
        self.assertFalse(LockLedger.for_install_root(self.install_root).path.exists())

    def test_unrecorded_directory_without_manifest_conflicts(self) -> None:
        skill = self.add_skill("pdf-tools")
        (self.install_root / "pdf-tools").mkdir(parents=True)

        with self.assertRaises(InstallError) as ctx:
            self.service(FakeRegistry(skill), FakeTransport(self.bundles)).install("pdf-tools")
        self.assertIsInstance(ctx.exception.cause, InstallConflictError)

    def test_unrecorded_directory_with_other_version_conflicts(self) -> None:
        skill = self.add_skill("pdf-tools", version="2.0.0")
        target = self.install_root / "pdf-tools"
        target.mkdir(parents=True)
        (target / "SKILL.md").write_text("---\nname: pdf-tools\nversion: 1.0.0\n---\n", encoding="utf-8")
        transport = FakeTransport(self.bundles)

        with self.assertRaises(InstallError) as ctx:
            self.service(FakeRegistry(skill), transport).install("pdf-tools")
        self.assertIsInstance(ctx.exception.cause, InstallConflictError)
        self.assertEqual(transport.downloads, [_cid("pdf-tools")])

    def test_unrecorded_directory_with_same_version_is_recorded_without_download(self) -> None:
        skill = self.add_skill("pdf-tools")
        target = self.install_root / "pdf-tools"
        target.mkdir(parents=True)
        (target / "SKILL.md").write_text("---\nname: pdf-tools\nversion: 1.0.0\n---\n", encoding="utf-8")
        transport = FakeTransport(self.bundles)

        result = self.service(FakeRegistry(skill), transport).install("pdf-tools")

        self.assertEqual(transport.downloads, [])
        self.assertEqual(result.installed, ())
        self.assertEqual(result.skipped, ("pdf-tools@1.0.0",))
        rec = LockLedger.for_install_root(self.install_root).get("pdf-tools")
        self.assertEqual(rec.version, "1.0.0")
        self.assertEqual(Path(rec.install_path), target.resolve())

    def test_reinstall_with_corrupt_ledger_succeeds(self) -> None:
        base = self.add_skill("base-utils")
        app = self.add_skill("pdf-tools", deps=("base-utils",))
        registry = FakeRegistry(app, base)
        transport = FakeTransport(self.bundles)
        self.service(registry, transport).install("pdf-tools")
        ledger = LockLedger.for_install_root(self.install_root)
        ledger.path.write_text("{not json", encoding="utf-8")

        result = self.service(registry, transport).install("pdf-tools")

        self.assertEqual(len(transport.downloads), 2)
        self.assertEqual(set(result.skipped), {"base-utils@1.0.0", "pdf-tools@1.0.0"})
        self.assertEqual(set(ledger.read()), {"base-utils", "pdf-tools"})

    def test_install_twice_without_ledger_succeeds(self) -> None:
        skill = self.add_skill("pdf-tools")
        registry = FakeRegistry(skill)
        transport = FakeTransport(self.bundles)
        self.service(registry, transport).install("pdf-tools", skip_lock=True)

        result = self.service(registry, transport).install("pdf-tools", skip_lock=True)

        self.assertEqual(len(transport.downloads), 1)
        self.assertEqual(result.skipped, ("pdf-tools@1.0.0",))
        self.assertFalse(LockLedger.for_install_root(self.install_root).path.exists())

    def test_force_reextracts_unrecorded_directory(self) -> None:
        skill = self.add_skill("pdf-tools")
        registry = FakeRegistry(skill)
        transport = FakeTransport(self.bundles)
        self.service(registry, transport).install("pdf-tools", skip_lock=True)

        result = self.service(registry, transport).install("pdf-tools", force=True, skip_lock=True)

        self.assertEqual(len(transport.downloads), 2)
        self.assertEqual(len(result.installed), 1)

    def test_missing_bundle_identifier_is_rejected(self) -> None:
        skill = SkillMetadata(name="broken", version="1.0.0", content_id="")
        with self.assertRaises(InstallError) as ctx:
            self.service(FakeRegistry(skill), FakeTransport({})).install("broken")
        self.assertIsInstance(ctx.exception.cause, ValidationError)

    def test_uninstall_removes_directory_and_record(self) -> None:
        skill = self.add_skill("pdf-tools")
        self.service(FakeRegistry(skill), FakeTransport(self.bundles)).install("pdf-tools")

        removed = uninstall_skill(self.install_root, "pdf-tools")

        self.assertFalse(removed.exists())
        self.assertEqual(LockLedger.for_install_root(self.install_root).read(), {})
        with self.assertRaises(ValidationError):
            uninstall_skill(self.install_root, "pdf-tools")
        with self.assertRaises(ValidationError):
            uninstall_skill(self.install_root, "../outside")


class TestInstallRoot(unittest.TestCase):
    def test_locations(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cwd = Path(td)
            self.assertEqual(resolve_install_root(cwd=cwd), (cwd / ".claude" / "skills").resolve())
            self.assertEqual(resolve_install_root(install_dir=cwd / "custom"), (cwd / "custom").resolve())
        self.assertEqual(resolve_install_root(global_=True), (Path.home() / ".claude" / "skills").resolve())


if __name__ == "__main__":
    unittest.main()
