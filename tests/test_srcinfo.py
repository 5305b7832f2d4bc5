"""Tests for .SRCINFO parsing."""

import pytest

from tandem.modules.srcinfo import SrcinfoError, load_srcinfo, parse_srcinfo

SPLIT = """
pkgbase = ab
\tpkgdesc = shared description
\tpkgver = 2.1
\tpkgrel = 3
\tepoch = 1
\tarch = x86_64
\tmakedepends = cmake
\tdepends = glibc
\tdepends_x86_64 = lib32-glibc
\tsource = git+https://example.org/ab.git#branch=main
\tsource = ab.patch

pkgname = a

pkgname = b
\tpkgdesc = second half
\tdepends = a=1:2.1-3
\tprovides = b-bin
"""


class TestParse:
    def test_base_fields(self):
        info = parse_srcinfo(SPLIT)
        assert info.pkgbase == "ab"
        assert info.version == "1:2.1-3"
        assert info.pkgnames == ["a", "b"]
        assert info.sources("x86_64") == ["git+https://example.org/ab.git#branch=main", "ab.patch"]

    def test_split_packages_inherit_and_override(self):
        pkgs = {p.name: p for p in parse_srcinfo(SPLIT).split_packages("x86_64")}
        assert pkgs["a"].depends == ["glibc", "lib32-glibc"]
        assert pkgs["a"].description == "shared description"
        assert pkgs["b"].depends == ["a=1:2.1-3"]
        assert pkgs["b"].description == "second half"
        assert pkgs["b"].provides == ["b-bin"]
        assert pkgs["a"].make_depends == ["cmake"]
        assert pkgs["b"].make_depends == ["cmake"]
        assert pkgs["a"].base == pkgs["b"].base == "ab"
        assert pkgs["b"].version == "1:2.1-3"

    def test_arch_specific_fields_ignored_for_other_arch(self):
        pkgs = {p.name: p for p in parse_srcinfo(SPLIT).split_packages("aarch64")}
        assert pkgs["a"].depends == ["glibc"]

    def test_split_package_satisfies_sibling_dependency(self):
        pkgs = {p.name: p for p in parse_srcinfo(SPLIT).split_packages("x86_64")}
        assert pkgs["a"].satisfies(pkgs["b"].depends[0])

    @pytest.mark.parametrize("text", [
        "pkgname = a\n",
        "pkgbase = a\npkgname = a\n",
        "pkgbase = a\npkgver = 1\n",
        "pkgbase = a\npkgver = 1\nnonsense\n",
    ])
    def test_invalid(self, text):
        with pytest.raises(SrcinfoError):
            parse_srcinfo(text)


def test_load_from_directory(tmp_path):
    (tmp_path / ".SRCINFO").write_text(SPLIT)
    info = load_srcinfo(str(tmp_path))
    assert info.pkgbase == "ab"
    assert info.path == str(tmp_path / ".SRCINFO")


def test_load_missing(tmp_path):
    with pytest.raises(SrcinfoError):
        load_srcinfo(str(tmp_path))
