"""
Workflow & Expression Core
==========================

Core engine of the workflow platform:
- Expression language (JSON-encoded operator trees)
- Parameters with dependency resolution and history
- Decision tables with hit policies
- Workflow definitions, validation and the execution engine
- Cron scheduling with time zones
- Workflow import/export envelopes
- Collaboration sessions with presence and locks
- Real-time paged data streams
- Audit log shared by every component
"""

__version__ = "2.0.0"
