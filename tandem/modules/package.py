# tandem/modules/package.py
"""
Package records.

``Package`` is the single representation used for every origin: a sync
database entry, an AUR RPC record, a split package from a .SRCINFO and an
installed package all end up here, so the resolver never has to care where a
record came from.

``PackageRef`` is what the dependency graph stores per node: the resolved
candidate and why it is part of the plan.
"""

from __future__ import annotations
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tandem.modules.version import satisfies


class Source(enum.Enum):
    REPO = "repo"          # binary repository, installed with pacman -S
    AUR = "aur"            # source package fetched from the AUR
    SRCINFO = "srcinfo"    # local source directory with a .SRCINFO
    LOCAL = "local"        # already satisfied by an installed package
    MISSING = "missing"    # nothing satisfies it

    @property
    def is_source_build(self) -> bool:
        return self in (Source.AUR, Source.SRCINFO)


class Reason(enum.IntEnum):
    EXPLICIT = 0
    DEP = 1
    MAKE_DEP = 2
    CHECK_DEP = 3

    @property
    def label(self) -> str:
        return _REASON_LABELS[self]


_REASON_LABELS = {
    Reason.EXPLICIT: "Explicit",
    Reason.DEP: "Dependency",
    Reason.MAKE_DEP: "Make Dependency",
    Reason.CHECK_DEP: "Check Dependency",
}


@dataclass
class Package:
    name: str
    version: str = ""
    base: str = ""
    description: str = ""
    url: str = ""
    repository: str = ""
    depends: List[str] = field(default_factory=list)
    make_depends: List[str] = field(default_factory=list)
    check_depends: List[str] = field(default_factory=list)
    opt_depends: List[str] = field(default_factory=list)
    provides: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    replaces: List[str] = field(default_factory=list)
    groups: List[str] = field(default_factory=list)
    arch: List[str] = field(default_factory=list)
    maintainer: Optional[str] = None
    num_votes: int = 0
    popularity: float = 0.0
    last_modified: int = 0
    out_of_date: Optional[int] = None
    build_date: int = 0
    install_reason: Optional[Reason] = None

    def __post_init__(self):
        if not self.base:
            self.base = self.name

    def satisfies(self, dep: str) -> bool:
        return satisfies(dep, self.name, self.version, self.provides)

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "Package":
        """Build from one ``results`` entry of the AUR RPC v5 interface."""
        return cls(
            name=data.get("Name", ""),
            version=data.get("Version", ""),
            base=data.get("PackageBase") or data.get("Name", ""),
            description=data.get("Description") or "",
            url=data.get("URL") or "",
            repository="aur",
            depends=list(data.get("Depends") or []),
            make_depends=list(data.get("MakeDepends") or []),
            check_depends=list(data.get("CheckDepends") or []),
            opt_depends=list(data.get("OptDepends") or []),
            provides=list(data.get("Provides") or []),
            conflicts=list(data.get("Conflicts") or []),
            replaces=list(data.get("Replaces") or []),
            groups=list(data.get("Groups") or []),
            maintainer=data.get("Maintainer"),
            num_votes=int(data.get("NumVotes") or 0),
            popularity=float(data.get("Popularity") or 0.0),
            last_modified=int(data.get("LastModified") or 0),
            out_of_date=data.get("OutOfDate"),
        )


@dataclass
class PackageRef:
    """A resolved candidate stored on a graph node."""
    name: str
    source: Source
    reason: Reason = Reason.EXPLICIT
    version: str = ""
    local_version: str = ""
    package_base: Optional[str] = None
    repository: Optional[str] = None
    srcinfo_path: Optional[str] = None
    is_upgrade: bool = False
    is_devel: bool = False
    is_group: bool = False

    def __str__(self):
        return f"PackageRef({self.name}, source={self.source.value}, reason={self.reason.label})"
