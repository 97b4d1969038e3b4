"""Bundle Pipeline - build and publish untrusted mini-app sources.

This package turns user-submitted markup or component code into a
network-policy-constrained static bundle and tracks that bundle through
a versioned publish lifecycle.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
