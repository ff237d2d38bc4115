# ABOUTME: Utilities package initialization for the GitOps reconciler
# ABOUTME: Contains shared utilities for the cluster client, safety, and logging

"""
GitOps reconciler utilities

Shared utilities:
    - client.py: Kubernetes API client with retry logic and error classification
    - safety.py: Guards for manual operations and Secret masking
    - logging.py: Structured logging with correlation IDs and audit trail
"""
