"""Fleet orchestrator.

In-process control plane for a fleet of logical services:
 - service registry with per-service locking
 - load balancing and per-service circuit breaking
 - rolling / blue-green / canary / recreate deployments
 - health checking, self-healing and auto-scaling loops

Provisioning, metrics, configuration storage and span export are pluggable
collaborators (see ``fleet.provisioning``, ``fleet.metrics`` and ``fleet.db``).
"""

__version__ = "0.1.0"
