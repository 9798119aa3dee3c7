"""Bundle Pruner: shrink front-end bundles by stubbing unused components."""

__version__ = "0.3.0"
