"""kubecast: fan out Kubernetes cluster events to WebSocket subscribers."""

__version__ = "0.1.0"
