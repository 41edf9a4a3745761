"""Logging and Prometheus metrics for kubecast."""
