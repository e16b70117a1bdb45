"""Runtime of the ovnkube control plane.

Loads the configuration, watches the Kubernetes API, drives the reconcilers
of :mod:`ovnkube` from per-kind work queues and prepares nodes for pods.
"""
