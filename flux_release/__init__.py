"""
flux-release reconciles Flux HelmReleases through atomic release actions.

The library decides the next lifecycle action of a release (install, upgrade,
test, rollback or uninstall), performs it through a deployment backend and
records the outcome in the status of the HelmRelease.
"""

__all__ = [
    "backend",
    "helm_controller",
    "manifest",
    "store",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
