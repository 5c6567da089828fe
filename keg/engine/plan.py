# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""Human-readable rendering of installation plans"""

from typing import List

from keg.models.package_models import InstallationPlan, NodeAction


def plan_summary(plan: InstallationPlan) -> List[str]:
    """One line per node, in install order, followed by resolver warnings."""
    lines = []
    for node in plan.nodes:
        label = f"{node.name} {node.version}"
        if node.variants:
            label += f" [{','.join(sorted(node.variants))}]"

        if node.action == NodeAction.SKIP:
            line = f"= {label} (already installed)"
        elif node.action == NodeAction.UPGRADE:
            line = f"^ {node.name} {node.installed_version} -> {node.version}"
        else:
            line = f"+ {label}"

        if not node.retained:
            line += " (build only)"
        lines.append(line)

    for warning in plan.warnings:
        lines.append(f"! {warning}")
    return lines
