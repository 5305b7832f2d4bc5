# tandem/modules/version.py
"""
Version strings and dependency expressions, pacman flavour.

 - vercmp(a, b): same ordering as ``vercmp(8)`` / alpm_pkg_vercmp
   ([epoch:]version[-release], rpm segment rules).
 - split_dep("foo>=1.2") -> ("foo", ">=", "1.2")
 - satisfies / provide_satisfies: does a name+version (or a provide entry)
   satisfy a dependency expression.
"""

from __future__ import annotations
import re
from typing import Iterable, Optional, Tuple

_DEP_RE = re.compile(r"^([^<>=]*)([<>=]+)(.*)$")


def _isdigit(c: str) -> bool:
    return "0" <= c <= "9"


def _isalpha(c: str) -> bool:
    return ("a" <= c <= "z") or ("A" <= c <= "Z")


def _isalnum(c: str) -> bool:
    return _isdigit(c) or _isalpha(c)


def _parse_evr(evr: str) -> Tuple[str, str, Optional[str]]:
    i = 0
    while i < len(evr) and _isdigit(evr[i]):
        i += 1
    dash = evr.rfind("-", i)
    if i < len(evr) and evr[i] == ":":
        epoch = evr[:i] or "0"
        start = i + 1
    else:
        epoch = "0"
        start = 0
    if dash != -1:
        return epoch, evr[start:dash], evr[dash + 1:]
    return epoch, evr[start:], None


def rpmvercmp(a: str, b: str) -> int:
    """Compare two version segments with the rpm algorithm used by pacman."""
    if a == b:
        return 0

    one = two = 0
    ptr1 = ptr2 = 0
    while one < len(a) and two < len(b):
        while one < len(a) and not _isalnum(a[one]):
            one += 1
        while two < len(b) and not _isalnum(b[two]):
            two += 1

        if not (one < len(a) and two < len(b)):
            break

        # different separator lengths
        if (one - ptr1) != (two - ptr2):
            return -1 if (one - ptr1) < (two - ptr2) else 1

        ptr1, ptr2 = one, two
        if _isdigit(a[ptr1]):
            while ptr1 < len(a) and _isdigit(a[ptr1]):
                ptr1 += 1
            while ptr2 < len(b) and _isdigit(b[ptr2]):
                ptr2 += 1
            isnum = True
        else:
            while ptr1 < len(a) and _isalpha(a[ptr1]):
                ptr1 += 1
            while ptr2 < len(b) and _isalpha(b[ptr2]):
                ptr2 += 1
            isnum = False

        seg1, seg2 = a[one:ptr1], b[two:ptr2]
        if not seg1:
            return -1
        if not seg2:
            return 1 if isnum else -1

        if isnum:
            seg1 = seg1.lstrip("0")
            seg2 = seg2.lstrip("0")
            if len(seg1) != len(seg2):
                return 1 if len(seg1) > len(seg2) else -1

        if seg1 != seg2:
            return -1 if seg1 < seg2 else 1

        one, two = ptr1, ptr2

    rest1, rest2 = a[one:], b[two:]
    if not rest1 and not rest2:
        return 0

    # a remaining alpha string never beats an empty one
    if (not rest1 and not _isalpha(rest2[0])) or (rest1 and _isalpha(rest1[0])):
        return -1
    return 1


def vercmp(a: str, b: str) -> int:
    """-1, 0 or 1 as ``a`` is older, equal or newer than ``b``."""
    if a == b:
        return 0
    if not a:
        return -1
    if not b:
        return 1

    epoch1, ver1, rel1 = _parse_evr(a)
    epoch2, ver2, rel2 = _parse_evr(b)

    ret = rpmvercmp(epoch1, epoch2)
    if ret == 0:
        ret = rpmvercmp(ver1, ver2)
        if ret == 0 and rel1 and rel2:
            ret = rpmvercmp(rel1, rel2)
    return ret


def split_dep(dep: str) -> Tuple[str, str, str]:
    m = _DEP_RE.match(dep.strip())
    if not m:
        return dep.strip(), "", ""
    return m.group(1), m.group(2), m.group(3)


def split_db_from_name(target: str) -> Tuple[str, str]:
    """``core/foo`` -> ("core", "foo"); ``foo`` -> ("", "foo")."""
    if "/" in target:
        db, name = target.split("/", 1)
        return db, name
    return "", target


def ver_satisfies(version: str, mod: str, wanted: str) -> bool:
    if mod == "=":
        return vercmp(version, wanted) == 0
    if mod == "<":
        return vercmp(version, wanted) < 0
    if mod == "<=":
        return vercmp(version, wanted) <= 0
    if mod == ">":
        return vercmp(version, wanted) > 0
    if mod == ">=":
        return vercmp(version, wanted) >= 0
    return True


def pkg_satisfies(name: str, version: str, dep: str) -> bool:
    dep_name, mod, wanted = split_dep(dep)
    if dep_name != name:
        return False
    return ver_satisfies(version, mod, wanted)


def provide_satisfies(provide: str, dep: str) -> bool:
    dep_name, dep_mod, dep_version = split_dep(dep)
    provide_name, provide_mod, provide_version = split_dep(provide)
    if provide_name != dep_name:
        return False
    # unversioned provides can not satisfy a versioned dependency
    if not provide_mod and dep_mod:
        return False
    return ver_satisfies(provide_version, dep_mod, dep_version)


def satisfies(dep: str, name: str, version: str, provides: Iterable[str] = ()) -> bool:
    if pkg_satisfies(name, version, dep):
        return True
    return any(provide_satisfies(p, dep) for p in provides)
