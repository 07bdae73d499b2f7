# =============================================================================
# audit_core/__init__.py
# Offline-First Core for the 5S Audit Manager
# =============================================================================
"""
Offline-first synchronization and senso scoring for 5S field audits.

Subpackages:
- offline:  local store, identifiers, connectivity, cache-aside reads,
            pending operation queue and offline audit creation
- scoring:  audit scores and the hierarchical senso aggregator
- services: audit workflow and score report services
- data:     remote backend collaborators (Supabase, in-memory)
"""

__version__ = "0.4.0"
