import unittest

from permaskills.errors import ValidationError
from permaskills.models import DependencyRef, parse_package_spec
from permaskills.versions import compare_versions, exact_version, is_latest, sort_versions, version_satisfies


class TestVersions(unittest.TestCase):
    def test_compare_and_sort(self) -> None:
        self.assertLess(compare_versions("1.2.0", "1.10.0"), 0)
        self.assertLess(compare_versions("1.0.0-beta.2", "1.0.0"), 0)
        self.assertLess(compare_versions("1.0.0-alpha", "1.0.0-alpha.1"), 0)
        self.assertEqual(compare_versions("1.0.0+build.5", "1.0.0"), 0)
        self.assertEqual(sort_versions(["0.9.0", "1.10.0", "1.2.0", "1.2.0-rc.1"]), ["1.10.0", "1.2.0", "1.2.0-rc.1", "0.9.0"])

    def test_ranges(self) -> None:
        self.assertTrue(version_satisfies("1.4.2", "^1.0.0"))
        self.assertFalse(version_satisfies("2.0.0", "^1.0.0"))
        self.assertTrue(version_satisfies("0.2.5", "^0.2.0"))
        self.assertFalse(version_satisfies("0.3.0", "^0.2.0"))
        self.assertTrue(version_satisfies("1.2.9", "~1.2.3"))
        self.assertFalse(version_satisfies("1.3.0", "~1.2.3"))
        self.assertTrue(version_satisfies("1.5.0", ">=1.0.0 <2.0.0"))
        self.assertTrue(version_satisfies("3.0.0", None))
        self.assertTrue(version_satisfies("3.0.0", "latest"))

    def test_invalid_range_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            version_satisfies("1.0.0", "^abc")

    def test_exact_and_latest(self) -> None:
        self.assertEqual(exact_version("1.2.3"), "1.2.3")
        self.assertEqual(exact_version("=1.2.3"), "1.2.3")
        self.assertIsNone(exact_version("^1.2.3"))
        self.assertIsNone(exact_version(">=1.0.0 <2.0.0"))
        self.assertTrue(is_latest(None))
        self.assertTrue(is_latest("*"))
        self.assertFalse(is_latest("1.0.0"))


class TestPackageSpecs(unittest.TestCase):
    def test_parse_package_spec(self) -> None:
        self.assertEqual(parse_package_spec("pdf-tools"), ("pdf-tools", None))
        self.assertEqual(parse_package_spec(" pdf-tools@1.2.0 "), ("pdf-tools", "1.2.0"))
        for bad in ("", "pdf-tools@", "two words"):
            with self.assertRaises(ValidationError):
                parse_package_spec(bad)

    def test_dependency_ref_forms(self) -> None:
        self.assertEqual(DependencyRef.parse("base@^1.0.0"), DependencyRef("base", "^1.0.0"))
        self.assertEqual(DependencyRef.parse({"name": "base", "version": "1.0.0"}), DependencyRef("base", "1.0.0"))
        self.assertEqual(str(DependencyRef("base")), "base")
        self.assertIsNone(DependencyRef.parse(""))
        self.assertIsNone(DependencyRef.parse(42))


if __name__ == "__main__":
    unittest.main()
