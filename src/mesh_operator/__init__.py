# ABOUTME: Mesh GitOps operator package initialization
# ABOUTME: Exposes version information

"""
Mesh GitOps Operator - keeps a service mesh and its workloads in sync with git.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

mesh_operator/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── config.py            <- Configuration management (env vars, settings)
├── operator.py          <- Process entry point wiring every loop
├── wellknown.py         <- Marker labels, annotations, mesh kind tables
├── gitops/
│   ├── state.py         <- Change-set engine with Redis-backed snapshots
│   └── sync.py          <- Repository sync controller (git polling)
├── meshapi/
│   ├── commands.py      <- Mesh CLI command construction and routing
│   └── client.py        <- Command queues and CLI execution
├── install/
│   ├── evaluator.py     <- Configuration evaluator interface + JSON tree
│   ├── installer.py     <- Desired-state application, reconciliation loop
│   └── reconcilers.py   <- Label, sidecar and allowlist reconcilers
└── utils/
    ├── kube.py          <- Kubernetes client wrapper with retries
    ├── locks.py         <- Async read/write lock
    ├── logging.py       <- Structured logging with audit trails
    └── safety.py        <- Read-only and non-destructive guards
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
