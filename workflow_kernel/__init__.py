"""
Workflow Kernel - approval workflows and event triggers.

A layered engine with:
- Sequential, parallel and any-one approval workflows
- Per-instance mutual exclusion and optimistic versioning
- Timer-driven auto-approval
- Rule-based event triggers with an append-only execution log
"""

__version__ = "0.1.0"
