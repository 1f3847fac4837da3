"""
Core reconcile machinery shared by every phase.

This package provides:
- Phase outcomes and the phase scheduler
- State machines derived from status conditions
- Condition helpers and conflict-safe cluster patching
- Bounded polling for long waits

Import directly from the submodules:
# from dbcluster.core.phases import Phase, PhaseScheduler
# from dbcluster.core.result import Outcome
# from dbcluster.core.patching import ClusterPatcher
"""
