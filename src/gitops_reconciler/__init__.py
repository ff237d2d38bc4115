# ABOUTME: GitOps reconciler package initialization
# ABOUTME: Exposes version information and describes the package layout

"""
GitOps reconciler - keeps a Kubernetes cluster in sync with manifests in git.

=============================================================================
WHAT IS GITOPS RECONCILIATION?
=============================================================================

Git holds the desired state of an application as plain Kubernetes manifests.
The controller repeatedly:

1. READS the manifests at the tracked revision (pull only, never writes git)
2. READS the matching objects from the cluster
3. COMPARES the two, looking only at fields the manifests set
4. APPLIES the difference: create, merge-patch, or delete what it owns

Every pass is a "cycle". Cycles are triggered by a new commit, by drift in the
cluster, by a polling fallback, or by hand through the status surface.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

gitops_reconciler/
├── __init__.py      <- YOU ARE HERE
├── config.py        <- Settings: applications, cluster access, security
├── errors.py        <- Resource-level and cycle-level exceptions
├── models.py        <- Desired/live state, operations, results, persisted status
├── manifests.py     <- Git manifest source and desired-state parser
├── state.py         <- Cluster state reader
├── diff.py          <- Diff engine (one-way comparison, minimal patches)
├── reconciler.py    <- Applies operations: retries, convergence, cooldown
├── scheduler.py     <- Per-application single-flight loops and triggers
├── server.py        <- MCP status surface and the main() entry point
└── utils/
    ├── client.py    <- HTTP client for the Kubernetes REST API
    ├── logging.py   <- Structured logging, correlation ids, audit trail
    └── safety.py    <- Guards for manual operations, Secret masking
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
