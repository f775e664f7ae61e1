"""Layer 4 load balancing for the Kubernetes Gateway API: control plane, data plane API and tooling."""

__version__ = "0.3.0"