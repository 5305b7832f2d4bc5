# tandem/modules/resolver.py
"""
Resolver: turns requested names into a populated DependencyGraph.

For every package put in the graph its make, runtime and check dependencies
are resolved in this order:

 1. already satisfied by an installed package -> skipped
    (added as a LOCAL node when ``full_graph`` is set)
 2. already a node in the graph -> linked
 3. satisfied by a sync database package -> REPO node
 4. named or provided by AUR packages -> AUR node, recursed into
 5. nothing -> MISSING node, remembered with the chain that wanted it

Edges point from the package that needs something to the package that
provides it (``graph.depend_on(requester, provider)``).

Conflict and missing-dependency checks run over the finished graph.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from tandem.modules import logger as _logger
from tandem.modules.aur import AURClient, AURQueryError
from tandem.modules.config import TandemConfig
from tandem.modules.errors import TandemError
from tandem.modules.graph import CircularDependencyError, DependencyGraph, GraphError
from tandem.modules.localdb import PackageDB
from tandem.modules.multierror import MultiError
from tandem.modules.package import Package, PackageRef, Reason, Source
from tandem.modules.srcinfo import Srcinfo
from tandem.modules.version import split_db_from_name, split_dep

ProviderSelector = Callable[[str, List[Package]], Optional[Package]]


class PackagesNotFoundError(TandemError):
    """Targets or dependencies nothing can satisfy, with who wanted them."""

    def __init__(self, missing: Dict[str, List[List[str]]]):
        self.missing = missing
        super().__init__(self._format())

    def _format(self) -> str:
        lines = ["could not find all required packages:"]
        for dep in sorted(self.missing):
            for chain in self.missing[dep]:
                if chain:
                    lines.append(f"\t{dep} (Wanted by: {' -> '.join(chain)})")
                else:
                    lines.append(f"\t{dep} (Target)")
        return "\n".join(lines)


class ProviderError(TandemError):
    def __init__(self, dep: str, candidates: List[str]):
        self.dep = dep
        self.candidates = candidates
        super().__init__(f"no provider chosen for {dep} (candidates: {', '.join(candidates)})")


class ConflictError(TandemError):
    def __init__(self, conflicts: Dict[str, Set[str]]):
        self.conflicts = conflicts
        details = "; ".join(f"{name}: {', '.join(sorted(c))}" for name, c in sorted(conflicts.items()))
        super().__init__(f"package conflicts can not be resolved with noconfirm, aborting ({details})")


@dataclass
class Target:
    db: str
    name: str
    mod: str = ""
    version: str = ""

    @property
    def dep_string(self) -> str:
        return f"{self.name}{self.mod}{self.version}"

    def __str__(self):
        return f"{self.db}/{self.dep_string}" if self.db else self.dep_string


def to_target(raw: str) -> Target:
    """``[db/]name[<op>version]`` -> Target."""
    db, rest = split_db_from_name(raw.strip())
    name, mod, version = split_dep(rest)
    return Target(db=db, name=name, mod=mod, version=version)


class Grapher:
    def __init__(self, config: TandemConfig, db: PackageDB, aur: AURClient,
                 log: Optional[_logger.Logger] = None,
                 provider_selector: Optional[ProviderSelector] = None):
        self.config = config
        self.db = db
        self.aur = aur
        self.log = log or _logger.Logger("tandem.resolver", config)
        self.provider_selector = provider_selector

        self.packages: Dict[str, Package] = {}
        self.missing: Dict[str, List[List[str]]] = {}
        self._chains: Dict[str, List[str]] = {}
        self._provider_cache: Dict[str, Package] = {}
        self._candidates: Dict[str, List[Package]] = {}
        self._local_ok: Dict[str, bool] = {}

    # -------------------------
    # node bookkeeping
    # -------------------------
    def set_node_info(self, graph: DependencyGraph, name: str, ref: PackageRef):
        """Explicit replaces a dependency reason; otherwise the first ref wins."""
        existing = graph.get_node_info(name)
        if existing is not None:
            if ref.reason == Reason.EXPLICIT and existing.reason != Reason.EXPLICIT:
                graph.set_node_info(name, ref)
            return
        graph.set_node_info(name, ref)

    def _ref(self, pkg: Package, source: Source, reason: Reason, **extra) -> PackageRef:
        local = self.db.local_version(pkg.name)
        ref = PackageRef(
            name=pkg.name,
            source=source,
            reason=reason,
            version=pkg.version,
            local_version=local,
            package_base=pkg.base if source.is_source_build else None,
            repository=pkg.repository or None,
        )
        for key, value in extra.items():
            setattr(ref, key, value)
        return ref

    def _link(self, graph: DependencyGraph, requester: str, provider: str):
        try:
            graph.depend_on(requester, provider)
        except CircularDependencyError:
            a, b = graph.get_node_info(requester), graph.get_node_info(provider)
            if a and b and a.source.is_source_build and b.source.is_source_build:
                raise
            self.log.warning(f"ignoring circular dependency {requester} -> {provider}")
        except GraphError as e:
            self.log.warning(f"{requester} -> {provider}: {e}")

    def _chain(self, requester: str) -> List[str]:
        return self._chains.get(requester, []) + [requester]

    def _local_satisfied(self, dep: str) -> bool:
        if dep not in self._local_ok:
            self._local_ok[dep] = self.db.local_satisfier_exists(dep)
        return self._local_ok[dep]

    # -------------------------
    # entry points
    # -------------------------
    def graph_from_targets(self, targets: List[str],
                           graph: Optional[DependencyGraph] = None) -> DependencyGraph:
        graph = graph if graph is not None else DependencyGraph()
        mode = self.config.mode
        not_found: List[str] = []

        for raw in targets:
            target = to_target(raw)

            if target.db and target.db != "aur":
                pkg = self.db.sync_package_from_db(target.db, target.name)
                if pkg is None or not pkg.satisfies(target.dep_string):
                    not_found.append(str(target))
                    continue
                pkg.repository = pkg.repository or target.db
                self.graph_sync_pkg(pkg, graph=graph)
                continue

            if not target.db and mode.at_least_repo():
                pkg = self.db.sync_package(target.name)
                if pkg is not None and pkg.satisfies(target.dep_string):
                    self.graph_sync_pkg(pkg, graph=graph)
                    continue
                group = self.db.package_group(target.name)
                if group:
                    graph.add_node(target.name)
                    self.set_node_info(graph, target.name, PackageRef(
                        name=target.name, source=Source.REPO, reason=Reason.EXPLICIT,
                        repository=group[0].repository or None, is_group=True))
                    continue

            if target.db == "aur" or mode.at_least_aur():
                pkg = self._aur_target(graph, target)
                if pkg is not None:
                    self.graph_aur_target(pkg, graph=graph)
                    continue

            not_found.append(str(target))

        if not_found:
            raise PackagesNotFoundError({name: [[]] for name in not_found})
        return graph

    def _aur_target(self, graph: DependencyGraph, target: Target) -> Optional[Package]:
        try:
            pkg = self.aur.get(target.name)
            if pkg is not None and pkg.satisfies(target.dep_string):
                return pkg
            candidates = [p for p in self.aur.search_providers(target.name)
                          if p.satisfies(target.dep_string)]
        except AURQueryError as e:
            self.log.error(f"AUR lookup for {target.name} failed: {e}")
            return None
        if not candidates:
            return None
        return self._choose(graph, target.dep_string, candidates)

    def graph_aur_target(self, pkg: Package, ref: Optional[PackageRef] = None,
                         graph: Optional[DependencyGraph] = None) -> DependencyGraph:
        graph = graph if graph is not None else DependencyGraph()
        ref = ref or self._ref(pkg, Source.AUR, Reason.EXPLICIT)
        graph.add_node(pkg.name)
        self.set_node_info(graph, pkg.name, ref)
        self.packages.setdefault(pkg.name, pkg)
        self._chains.setdefault(pkg.name, [])
        self.add_dep_nodes(graph, pkg)
        return graph

    def graph_sync_pkg(self, pkg: Package, ref: Optional[PackageRef] = None,
                       graph: Optional[DependencyGraph] = None) -> DependencyGraph:
        graph = graph if graph is not None else DependencyGraph()
        ref = ref or self._ref(pkg, Source.REPO, Reason.EXPLICIT)
        graph.add_node(pkg.name)
        self.set_node_info(graph, pkg.name, ref)
        self.packages.setdefault(pkg.name, pkg)
        self._chains.setdefault(pkg.name, [])
        if self.config.full_graph:
            self.add_nodes(graph, pkg.name, pkg.depends, Reason.DEP)
        return graph

    def graph_from_srcinfo(self, directory: str, srcinfo: Srcinfo,
                           graph: Optional[DependencyGraph] = None) -> DependencyGraph:
        """Every split package of a local .SRCINFO, explicitly requested."""
        graph = graph if graph is not None else DependencyGraph()
        pkgs = srcinfo.split_packages()
        # all split packages first so siblings link to each other
        for pkg in pkgs:
            graph.add_node(pkg.name)
            self.set_node_info(graph, pkg.name, self._ref(
                pkg, Source.SRCINFO, Reason.EXPLICIT, srcinfo_path=directory))
            self.packages[pkg.name] = pkg
            self._chains.setdefault(pkg.name, [])
        for pkg in pkgs:
            self.add_dep_nodes(graph, pkg)
        return graph

    # -------------------------
    # dependency expansion
    # -------------------------
    def add_dep_nodes(self, graph: DependencyGraph, pkg: Package):
        lists = [(pkg.make_depends, Reason.MAKE_DEP)]
        if not self.config.no_deps:
            lists.append((pkg.depends, Reason.DEP))
            if not self.config.no_check_deps:
                lists.append((pkg.check_depends, Reason.CHECK_DEP))

        self._prefetch_providers(graph, [d for deps, _ in lists for d in deps])
        for deps, reason in lists:
            if deps:
                self.add_nodes(graph, pkg.name, deps, reason)

    def _prefetch_providers(self, graph: DependencyGraph, deps: List[str]):
        """Look up every dependency that will need the AUR in one bounded batch."""
        if not self.config.mode.at_least_aur():
            return
        pending = []
        for dep in deps:
            name = split_dep(dep)[0]
            if name in self._candidates or name in self._provider_cache or graph.exists(name):
                continue
            if self._local_satisfied(dep):
                continue
            if self.config.mode.at_least_repo() and self.db.sync_satisfier(dep) is not None:
                continue
            pending.append(name)
        if not pending:
            return
        try:
            if self.config.provides:
                found = self.aur.find_providers(pending, self.config.download_workers)
            else:
                by_name = self.aur.info(pending)
                found = {n: [by_name[n]] if n in by_name else [] for n in pending}
        except (MultiError, AURQueryError) as e:
            self.log.warning(f"AUR provider search failed: {e}")
            return
        self._candidates.update(found)

    def add_nodes(self, graph: DependencyGraph, requester: str, deps: List[str], reason: Reason):
        mode = self.config.mode
        for dep in deps:
            name, mod, version = split_dep(dep)

            if self._local_satisfied(dep):
                if self.config.full_graph:
                    if not graph.exists(name):
                        graph.add_node(name)
                        self.set_node_info(graph, name, PackageRef(
                            name=name, source=Source.LOCAL, reason=reason,
                            version=self.db.local_version(name),
                            local_version=self.db.local_version(name)))
                    self._link(graph, requester, name)
                continue

            if graph.exists(name):
                self._link(graph, requester, name)
                continue

            if mode.at_least_repo():
                sync = self.db.sync_satisfier(dep)
                if sync is not None:
                    is_new = not graph.exists(sync.name)
                    graph.add_node(sync.name)
                    self.set_node_info(graph, sync.name, self._ref(sync, Source.REPO, reason))
                    self.packages.setdefault(sync.name, sync)
                    self._chains.setdefault(sync.name, self._chain(requester))
                    if sync.name != name:
                        graph.alias(sync.name, name)
                    self._link(graph, requester, sync.name)
                    if is_new and self.config.full_graph:
                        self.add_nodes(graph, sync.name, sync.depends, Reason.DEP)
                    continue

            if mode.at_least_aur():
                pkg = self._aur_provider(graph, dep)
                if pkg is not None:
                    is_new = not graph.exists(pkg.name)
                    graph.add_node(pkg.name)
                    self.set_node_info(graph, pkg.name, self._ref(pkg, Source.AUR, reason))
                    self.packages.setdefault(pkg.name, pkg)
                    self._chains.setdefault(pkg.name, self._chain(requester))
                    if pkg.name != name:
                        graph.alias(pkg.name, name)
                    self._link(graph, requester, pkg.name)
                    if is_new:
                        self.add_dep_nodes(graph, pkg)
                    continue

            self._add_missing(graph, requester, dep, reason)

    def _add_missing(self, graph: DependencyGraph, requester: str, dep: str, reason: Reason):
        name, mod, version = split_dep(dep)
        graph.add_node(name)
        self.set_node_info(graph, name, PackageRef(
            name=name, source=Source.MISSING, reason=reason, version=f"{mod}{version}"))
        self._link(graph, requester, name)
        chain = self._chain(requester)
        chains = self.missing.setdefault(dep, [])
        if chain not in chains:
            chains.append(chain)

    # -------------------------
    # providers
    # -------------------------
    def _aur_provider(self, graph: DependencyGraph, dep: str) -> Optional[Package]:
        name = split_dep(dep)[0]
        cached = self._provider_cache.get(name)
        if cached is not None and cached.satisfies(dep):
            return cached

        if name not in self._candidates:
            try:
                if self.config.provides:
                    self._candidates[name] = self.aur.search_providers(name)
                else:
                    pkg = self.aur.get(name)
                    self._candidates[name] = [pkg] if pkg is not None else []
            except AURQueryError as e:
                self.log.warning(f"AUR provider search for {name} failed: {e}")
                self._candidates[name] = []

        candidates = [p for p in self._candidates[name] if p.satisfies(dep)]
        if not candidates:
            return None
        if len(candidates) == 1:
            return candidates[0]
        chosen = self._choose(graph, dep, candidates)
        self._provider_cache[name] = chosen
        return chosen

    def _choose(self, graph: DependencyGraph, dep: str, candidates: List[Package]) -> Package:
        candidates = sorted(candidates, key=lambda p: p.name)
        if len(candidates) == 1:
            return candidates[0]
        if self.provider_selector is not None:
            chosen = self.provider_selector(dep, candidates)
            if chosen is None:
                raise ProviderError(dep, [p.name for p in candidates])
            return chosen
        return auto_select_provider(dep, candidates, graph)

    # -------------------------
    # checks
    # -------------------------
    def _candidate_packages(self, graph: DependencyGraph) -> Dict[str, Package]:
        out = {}
        for name, ref in graph.items():
            if ref is None or ref.is_group:
                continue
            if ref.source in (Source.REPO, Source.AUR, Source.SRCINFO) and name in self.packages:
                out[name] = self.packages[name]
        return out

    def check_conflicts(self, graph: DependencyGraph, no_confirm: Optional[bool] = None) -> Dict[str, Set[str]]:
        """
        Name -> conflicting names over the whole candidate set:

         - inner: two candidates conflict with each other
         - forward: a candidate conflicts with an installed package
         - reverse: an installed package conflicts with a candidate

        Installed packages that are part of the plan are not checked, they
        are being replaced.
        """
        if no_confirm is None:
            no_confirm = self.config.no_confirm
        conflicts: Dict[str, Set[str]] = {}
        if self.config.no_deps:
            return conflicts

        candidates = self._candidate_packages(graph)
        installed = {n: p for n, p in self.db.installed_packages().items() if n not in candidates}

        self.log.info("checking for conflicts...")
        for name, pkg in candidates.items():
            for conflict in pkg.conflicts:
                for other in candidates.values():
                    if other.name != name and other.satisfies(conflict):
                        conflicts.setdefault(name, set()).add(other.name)
                for local in installed.values():
                    if local.name != name and local.satisfies(conflict):
                        label = local.name if local.name == conflict else f"{local.name} ({conflict})"
                        conflicts.setdefault(name, set()).add(label)

        for local in installed.values():
            for conflict in local.conflicts:
                for other in candidates.values():
                    if other.name != local.name and other.satisfies(conflict):
                        conflicts.setdefault(other.name, set()).add(local.name)

        if conflicts:
            for name in sorted(conflicts):
                self.log.error(f"installing {name} will remove: {', '.join(sorted(conflicts[name]))}")
            if no_confirm:
                raise ConflictError(conflicts)
            self.log.warning("conflicting packages will have to be confirmed manually")
        return conflicts

    def check_missing(self, graph: DependencyGraph):
        """Raise PackagesNotFoundError for every MISSING node still in the graph."""
        missing: Dict[str, List[List[str]]] = {}
        for name, ref in graph.items():
            if ref is None or ref.source != Source.MISSING:
                continue
            deps = [d for d in self.missing if split_dep(d)[0] == name]
            for dep in deps:
                missing[dep] = list(self.missing[dep])
            if not deps:
                missing[name] = [[]]
        if missing:
            raise PackagesNotFoundError(missing)


def auto_select_provider(dep: str, candidates: List[Package],
                         graph: Optional[DependencyGraph] = None) -> Package:
    """
    Non-interactive provider choice: the package named like the dependency,
    else one already planned, else the first by name.
    """
    name = split_dep(dep)[0]
    ordered = sorted(candidates, key=lambda p: p.name)
    for pkg in ordered:
        if pkg.name == name:
            return pkg
    if graph is not None:
        for pkg in ordered:
            if graph.exists(pkg.name):
                return pkg
    return ordered[0]
