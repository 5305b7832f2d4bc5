# tandem/modules/srcinfo.py
"""
.SRCINFO reader.

A .SRCINFO has one ``pkgbase`` section followed by one ``pkgname`` section
per split package. Fields set in a ``pkgname`` section replace (not extend)
the value inherited from ``pkgbase``. Architecture specific fields
(``depends_x86_64 = ...``) are added to the plain field when the arch
matches.

    info = load_srcinfo("/home/me/.cache/tandem/foo")
    for pkg in info.split_packages():
        print(pkg.name, pkg.version, pkg.depends)
"""

from __future__ import annotations
import os
import platform
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from tandem.modules.errors import TandemError
from tandem.modules.package import Package

SRCINFO_NAME = ".SRCINFO"

# fields that can appear more than once and are kept as lists
_LIST_FIELDS = {
    "arch", "groups", "license", "depends", "makedepends", "checkdepends",
    "optdepends", "provides", "conflicts", "replaces", "source", "validpgpkeys",
    "backup", "options", "noextract", "md5sums", "sha1sums", "sha256sums",
    "sha512sums", "b2sums",
}

# fields that only make sense on the base section
_BASE_ONLY = {"pkgver", "pkgrel", "epoch", "makedepends", "checkdepends", "source",
              "validpgpkeys", "noextract"}


class SrcinfoError(TandemError):
    pass


def default_arch() -> str:
    return platform.machine() or "x86_64"


@dataclass
class Srcinfo:
    pkgbase: str
    pkgver: str = ""
    pkgrel: str = ""
    epoch: str = ""
    base_fields: Dict[str, List[str]] = field(default_factory=dict)
    packages: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)
    path: Optional[str] = None

    @property
    def version(self) -> str:
        ver = f"{self.pkgver}-{self.pkgrel}" if self.pkgrel else self.pkgver
        if self.epoch and self.epoch != "0":
            ver = f"{self.epoch}:{ver}"
        return ver

    @property
    def pkgnames(self) -> List[str]:
        return list(self.packages)

    def _field(self, values: Dict[str, List[str]], name: str, arch: str) -> Optional[List[str]]:
        plain = values.get(name)
        specific = values.get(f"{name}_{arch}")
        if plain is None and specific is None:
            return None
        return list(plain or []) + list(specific or [])

    def get(self, pkgname: str, name: str, arch: Optional[str] = None) -> List[str]:
        """Effective value of a field for one split package."""
        arch = arch or default_arch()
        if pkgname not in self.packages:
            raise SrcinfoError(f"{self.pkgbase}: no package named {pkgname}")
        override = self._field(self.packages[pkgname], name, arch)
        if override is not None and name not in _BASE_ONLY:
            return override
        return self._field(self.base_fields, name, arch) or []

    def sources(self, arch: Optional[str] = None) -> List[str]:
        return self._field(self.base_fields, "source", arch or default_arch()) or []

    def split_packages(self, arch: Optional[str] = None) -> List[Package]:
        out: List[Package] = []
        for name in self.packages:
            get = lambda f: self.get(name, f, arch)  # noqa: E731
            desc = get("pkgdesc")
            url = get("url")
            out.append(Package(
                name=name,
                version=self.version,
                base=self.pkgbase,
                description=desc[0] if desc else "",
                url=url[0] if url else "",
                depends=get("depends"),
                make_depends=get("makedepends"),
                check_depends=get("checkdepends"),
                opt_depends=get("optdepends"),
                provides=get("provides"),
                conflicts=get("conflicts"),
                replaces=get("replaces"),
                groups=get("groups"),
                arch=get("arch"),
            ))
        return out


def parse_srcinfo(text: str, path: Optional[str] = None) -> Srcinfo:
    info: Optional[Srcinfo] = None
    current: Optional[Dict[str, List[str]]] = None

    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            raise SrcinfoError(f"{path or SRCINFO_NAME}:{lineno}: expected 'key = value', got {line!r}")

        key, value = (part.strip() for part in line.split("=", 1))
        if key == "pkgbase":
            if info is not None:
                raise SrcinfoError(f"{path or SRCINFO_NAME}:{lineno}: pkgbase declared twice")
            info = Srcinfo(pkgbase=value, path=path)
            current = info.base_fields
            continue
        if info is None:
            raise SrcinfoError(f"{path or SRCINFO_NAME}:{lineno}: {key} before pkgbase")
        if key == "pkgname":
            if value in info.packages:
                raise SrcinfoError(f"{path or SRCINFO_NAME}:{lineno}: pkgname {value} declared twice")
            current = info.packages.setdefault(value, {})
            continue

        if current is info.base_fields:
            if key == "pkgver":
                info.pkgver = value
            elif key == "pkgrel":
                info.pkgrel = value
            elif key == "epoch":
                info.epoch = value

        values = current.setdefault(key, [])
        if key.split("_", 1)[0] in _LIST_FIELDS:
            # an empty assignment clears an inherited list
            if value:
                values.append(value)
        else:
            values[:] = [value]

    if info is None:
        raise SrcinfoError(f"{path or SRCINFO_NAME}: missing pkgbase")
    if not info.pkgver:
        raise SrcinfoError(f"{path or SRCINFO_NAME}: missing pkgver")
    if not info.packages:
        raise SrcinfoError(f"{path or SRCINFO_NAME}: no pkgname declared")
    return info


def load_srcinfo(path: str) -> Srcinfo:
    """Parse ``path`` (a .SRCINFO file or a directory holding one)."""
    path = os.path.abspath(path)
    if os.path.isdir(path):
        path = os.path.join(path, SRCINFO_NAME)
    if not os.path.exists(path):
        raise SrcinfoError(f"{SRCINFO_NAME} not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return parse_srcinfo(f.read(), path=path)
