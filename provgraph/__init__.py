"""provgraph: dependency-ordered, idempotent resource provisioning."""
__version__ = "0.3.0"
