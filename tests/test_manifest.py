import tempfile
import unittest
from pathlib import Path

from permaskills.errors import ManifestMissingError, ValidationError
from permaskills.manifest import basic_validate, load_manifest, manifest_name, read_front_matter
from permaskills.models import DependencyRef


class TestFrontMatter(unittest.TestCase):
    def test_reads_mapping_between_delimiters(self) -> None:
        text = "---\nname: pdf-tools\ntags:\n  - pdf\n---\n# Body\n---\n"
        self.assertEqual(read_front_matter(text), {"name": "pdf-tools", "tags": ["pdf"]})

    def test_no_front_matter(self) -> None:
        self.assertEqual(read_front_matter("# Just markdown\n"), {})
        self.assertEqual(read_front_matter("---\nname: never closed\n"), {})

    def test_malformed_yaml(self) -> None:
        with self.assertRaises(ValidationError):
            read_front_matter("---\nname: [unclosed\n---\n")


class TestValidation(unittest.TestCase):
    def test_reports_every_problem(self) -> None:
        errors = basic_validate({"name": "Bad_Name", "version": "1.0", "tags": "pdf", "description": "x" * 1025})
        self.assertIn("Missing required field: author", errors)
        self.assertIn("Invalid name format: use lowercase letters, numbers and hyphens", errors)
        self.assertIn("Invalid version format: use semantic versioning (e.g. 1.0.0)", errors)
        self.assertIn("Field tags must be a list", errors)
        self.assertTrue(any("maximum length" in e for e in errors))

    def test_valid_manifest_has_no_errors(self) -> None:
        data = {"name": "pdf-tools", "version": "1.0.0-beta.1", "description": "d", "author": "a"}
        self.assertEqual(basic_validate(data), [])


class TestLoadManifest(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.dir = Path(self._td.name)

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_load(self) -> None:
        (self.dir / "SKILL.md").write_text(
            "---\nname: pdf-tools\nversion: 2.0.0\ndescription: PDF helpers\nauthor: Ada\n"
            "dependencies: [base-utils@^1.0.0, {name: fonts, version: 1.0.0}]\n---\n",
            encoding="utf-8",
        )
        m = load_manifest(self.dir)
        self.assertEqual((m.name, m.version, m.author), ("pdf-tools", "2.0.0", "Ada"))
        self.assertEqual(m.dependencies, (DependencyRef("base-utils", "^1.0.0"), DependencyRef("fonts", "1.0.0")))
        self.assertIsNone(m.license)
        self.assertEqual(manifest_name(self.dir / "SKILL.md"), "pdf-tools")

    def test_missing_file(self) -> None:
        with self.assertRaises(ManifestMissingError):
            load_manifest(self.dir)

    def test_empty_front_matter(self) -> None:
        (self.dir / "SKILL.md").write_text("# no front matter\n", encoding="utf-8")
        with self.assertRaises(ValidationError) as ctx:
            load_manifest(self.dir)
        self.assertIn("no front matter", str(ctx.exception))

    def test_name_must_be_a_directory_name(self) -> None:
        (self.dir / "SKILL.md").write_text("---\nname: ../escape\n---\n", encoding="utf-8")
        with self.assertRaises(ValidationError):
            manifest_name(self.dir / "SKILL.md")


if __name__ == "__main__":
    unittest.main()
