"""Threat cluster detectors package.

Exports ALL_DETECTORS (detector instances in evaluation order) and the
individual detector classes for direct use.
"""

from .base import ClusterDetector
from .device import DeviceFingerprintClusterDetector
from .ip import IPClusterDetector
from .user_agent import UserAgentClusterDetector
from .velocity import VelocityClusterDetector

# All detector instances in evaluation order
ALL_DETECTORS: list[ClusterDetector] = [
    IPClusterDetector(),
    DeviceFingerprintClusterDetector(),
    VelocityClusterDetector(),
    UserAgentClusterDetector(),
]

__all__ = [
    "ALL_DETECTORS",
    "ClusterDetector",
    "DeviceFingerprintClusterDetector",
    "IPClusterDetector",
    "UserAgentClusterDetector",
    "VelocityClusterDetector",
]
