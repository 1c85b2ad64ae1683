# ABOUTME: Utilities package initialization for the mesh GitOps operator
# ABOUTME: Contains shared utilities for the cluster client, locking, safety, and logging

"""
Mesh operator utilities package.

Shared utilities:
    - kube.py: Kubernetes API client wrapper with retry logic
    - locks.py: Async read/write lock for the desired-state description
    - safety.py: Read-only and destructive operation guards
    - logging.py: Structured logging with correlation IDs
"""
