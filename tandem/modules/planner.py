# tandem/modules/planner.py
"""
Layer planner: ordered install batches plus the build directory of every
package base that has to be built.
"""

from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from tandem.modules import logger as _logger
from tandem.modules.graph import DependencyGraph
from tandem.modules.package import PackageRef, Reason, Source


@dataclass
class InstallPlan:
    layers: List[Dict[str, PackageRef]] = field(default_factory=list)
    build_dirs: Dict[str, str] = field(default_factory=dict)  # base -> directory

    def __len__(self):
        return sum(len(layer) for layer in self.layers)

    def refs(self) -> List[PackageRef]:
        return [ref for layer in self.layers for ref in layer.values()]

    def source_bases(self) -> List[str]:
        return list(self.build_dirs)

    def summary(self) -> Dict[Source, Dict[Reason, List[Tuple[str, str]]]]:
        """{source: {reason: [(name, version), ...]}} for display."""
        out: Dict[Source, Dict[Reason, List[Tuple[str, str]]]] = {}
        for ref in self.refs():
            out.setdefault(ref.source, {}).setdefault(ref.reason, []).append((ref.name, ref.version))
        for by_reason in out.values():
            for entries in by_reason.values():
                entries.sort()
        return out


class Planner:
    def __init__(self, config, log: Optional[_logger.Logger] = None):
        self.config = config
        self.log = log or _logger.Logger("tandem.planner", config)

    def plan(self, graph: DependencyGraph) -> InstallPlan:
        plan = InstallPlan(layers=graph.topo_sorted_layer_map())
        for ref in plan.refs():
            if ref.source == Source.AUR:
                base = ref.package_base or ref.name
                plan.build_dirs.setdefault(base, os.path.join(self.config.build_dir, base))
            elif ref.source == Source.SRCINFO:
                base = ref.package_base or ref.name
                plan.build_dirs.setdefault(base, ref.srcinfo_path or os.path.join(self.config.build_dir, base))
        self.log.debug(f"planned {len(plan)} packages in {len(plan.layers)} layers, "
                       f"{len(plan.build_dirs)} bases to build")
        return plan
