"""
Workflow Kernel

Core of a state-machine-driven business-process engine:
- Immutable workflow definitions with guarded transitions
- Approval-gated transitions resolved by pluggable consensus strategies
- SLA deadlines with business-hours arithmetic and escalation
- Optimistic concurrency on every mutable record
- Structured, machine-readable errors and JSON logs
"""

__version__ = "0.1.0"
