"""
deployctl - Release orchestrator for service binaries deployed over SSH.

This package provides a CLI and a phase-driven engine that backs up, ships,
restarts, health-checks and (if needed) rolls back a service on a target host.
"""

__version__ = "0.1.0"
__author__ = "deployctl maintainers"
