import io
import tarfile
import tempfile
import types
import unittest
from pathlib import Path

from permaskills.bundle import is_gzip, pack_bundle, unpack_bundle
from permaskills.errors import (
    FileSystemError,
    InstallConflictError,
    ManifestMissingError,
    ValidationError,
)


def _write_skill(root: Path, name: str = "demo-skill", version: str = "1.0.0") -> Path:
    root.mkdir(parents=True, exist_ok=True)
    (root / "SKILL.md").write_text(
        f"---\nname: {name}\nversion: {version}\ndescription: Demo skill\nauthor: Tester\n---\n# Demo\n",
        encoding="utf-8",
    )
    (root / "scripts").mkdir(exist_ok=True)
    (root / "scripts" / "run.py").write_text("print('ok')\n", encoding="utf-8")
    return root


def _tar_gz(entries: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, content in entries.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(content)
            tf.addfile(info, io.BytesIO(content))
    return buf.getvalue()


class TestPackBundle(unittest.TestCase):
    def test_pack_enumerates_sorted_files_and_skips_hidden_and_vcs(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _write_skill(Path(td) / "demo")
            (root / ".git").mkdir()
            (root / ".git" / "HEAD").write_text("ref\n", encoding="utf-8")
            (root / "node_modules").mkdir()
            (root / "node_modules" / "x.js").write_text("x\n", encoding="utf-8")
            (root / ".env").write_text("SECRET=1\n", encoding="utf-8")
            (root / "README.md").write_text("readme\n", encoding="utf-8")

            bundle = pack_bundle(root)

            self.assertEqual(bundle.files, ("README.md", "SKILL.md", "scripts/run.py"))
            self.assertEqual(bundle.file_count, 3)
            self.assertTrue(is_gzip(bundle.data))
            self.assertEqual(bundle.size, len(bundle.data))
            self.assertFalse(bundle.exceeded_limit)

    def test_pack_is_deterministic(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _write_skill(Path(td) / "demo")
            first = pack_bundle(root)
            second = pack_bundle(root)
            self.assertEqual(first.data, second.data)
            self.assertEqual(first.sha256, second.sha256)

    def test_pack_reports_progress_per_file(self) -> None:
        seen = []
        with tempfile.TemporaryDirectory() as td:
            root = _write_skill(Path(td) / "demo")
            pack_bundle(root, on_progress=seen.append)
        self.assertEqual([(p.current, p.total, p.file) for p in seen], [(1, 2, "SKILL.md"), (2, 2, "scripts/run.py")])

    def test_pack_flags_soft_limit_without_failing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _write_skill(Path(td) / "demo")
            bundle = pack_bundle(root, max_bundle_size=10)
        self.assertTrue(bundle.exceeded_limit)

    def test_pack_requires_manifest(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td) / "empty"
            root.mkdir()
            with self.assertRaises(ManifestMissingError):
                pack_bundle(root)


class TestUnpackBundle(unittest.TestCase):
    def test_round_trip_keeps_name_and_file_count(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            bundle = pack_bundle(_write_skill(Path(td) / "src-dir", name="round-trip"))
            install_root = Path(td) / ".claude" / "skills"

            result = unpack_bundle(bundle.data, install_root)

            self.assertEqual(result.name, "round-trip")
            self.assertEqual(result.file_count, bundle.file_count)
            self.assertEqual(result.path, (install_root / "round-trip").resolve())
            self.assertTrue((result.path / "scripts" / "run.py").is_file())
            self.assertFalse(result.replaced)
            # Only the installed skill is left behind.
            self.assertEqual([p.name for p in install_root.iterdir()], ["round-trip"])

    def test_rejects_non_gzip_before_touching_disk(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            install_root = Path(td) / "skills"
            with self.assertRaises(ValidationError):
                unpack_bundle(b"PK\x03\x04not a tarball", install_root)
            self.assertFalse(install_root.exists())

    def test_existing_target_requires_force_or_confirmation(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            bundle = pack_bundle(_write_skill(Path(td) / "src-dir"))
            install_root = Path(td) / "skills"
            unpack_bundle(bundle.data, install_root)

            with self.assertRaises(InstallConflictError):
                unpack_bundle(bundle.data, install_root)
            with self.assertRaises(InstallConflictError):
                unpack_bundle(bundle.data, install_root, confirm=lambda _p: False)

            asked = []
            result = unpack_bundle(bundle.data, install_root, confirm=lambda p: asked.append(p) or True)
            self.assertTrue(result.replaced)
            self.assertEqual(len(asked), 1)

            result = unpack_bundle(bundle.data, install_root, force=True)
            self.assertTrue(result.replaced)
            self.assertTrue((install_root / "demo-skill" / "SKILL.md").is_file())

    def test_missing_manifest_name_fails_and_cleans_up(self) -> None:
        data = _tar_gz({"SKILL.md": b"---\nversion: 1.0.0\n---\n", "a.txt": b"a"})
        with tempfile.TemporaryDirectory() as td:
            install_root = Path(td) / "skills"
            with self.assertRaises(ManifestMissingError):
                unpack_bundle(data, install_root)
            self.assertEqual(list(install_root.iterdir()), [])

    def test_missing_manifest_file_fails(self) -> None:
        data = _tar_gz({"a.txt": b"a", "b.txt": b"b"})
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ManifestMissingError):
                unpack_bundle(data, Path(td) / "skills")

    def test_accepts_single_top_level_directory(self) -> None:
        data = _tar_gz({"wrapped/SKILL.md": b"---\nname: wrapped-skill\n---\n", "wrapped/x.txt": b"x"})
        with tempfile.TemporaryDirectory() as td:
            result = unpack_bundle(data, Path(td) / "skills")
            self.assertEqual(result.name, "wrapped-skill")
            self.assertTrue((result.path / "x.txt").is_file())

    def test_rejects_path_traversal(self) -> None:
        data = _tar_gz({"SKILL.md": b"---\nname: evil\n---\n", "../escape.txt": b"x"})
        with tempfile.TemporaryDirectory() as td:
            install_root = Path(td) / "skills"
            with self.assertRaises(ValidationError):
                unpack_bundle(data, install_root)
            self.assertFalse((Path(td) / "escape.txt").exists())
            self.assertEqual(list(install_root.iterdir()), [])

    def test_rejects_links(self) -> None:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tf:
            manifest = b"---\nname: linky\n---\n"
            info = tarfile.TarInfo(name="SKILL.md")
            info.size = len(manifest)
            tf.addfile(info, io.BytesIO(manifest))
            link = tarfile.TarInfo(name="passwd")
            link.type = tarfile.SYMTYPE
            link.linkname = "/etc/passwd"
            tf.addfile(link)
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ValidationError):
                unpack_bundle(buf.getvalue(), Path(td) / "skills")

    def test_checks_disk_space_before_extracting(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            bundle = pack_bundle(_write_skill(Path(td) / "src-dir"))
            install_root = Path(td) / "skills"
            with self.assertRaises(FileSystemError):
                unpack_bundle(bundle.data, install_root, disk_usage=lambda _p: types.SimpleNamespace(free=0))
            self.assertEqual(list(install_root.iterdir()), [])


if __name__ == "__main__":
    unittest.main()
