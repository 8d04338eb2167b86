"""
fleet_hub/control_plane/plugins — built-in scheduler plugins.

default_profile() registers them in evaluation order:
    ClusterEligibility → ClusterAffinity → NamespaceAffinity
"""

from fleet_framework.framework import Profile
from fleet_hub.control_plane.plugins.cluster_affinity import ClusterAffinityPlugin, labels_match
from fleet_hub.control_plane.plugins.cluster_eligibility import ClusterEligibilityPlugin
from fleet_hub.control_plane.plugins.namespace_affinity import NamespaceAffinityPlugin


def default_profile() -> Profile:
    return (
        Profile("default")
        .with_plugin(ClusterEligibilityPlugin())
        .with_plugin(ClusterAffinityPlugin())
        .with_plugin(NamespaceAffinityPlugin())
    )


__all__ = [
    "ClusterAffinityPlugin",
    "ClusterEligibilityPlugin",
    "NamespaceAffinityPlugin",
    "default_profile",
    "labels_match",
]
