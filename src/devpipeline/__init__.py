"""Development pipeline service.

This package drives work items from intake through design, implementation,
review and merge:
- Project item store (status, review status, implementation phase)
- GitHub issue/PR gateway and durable artifact store
- Comment marker parsing for decisions, clarifications and phases
- Workflow transition service and agent run orchestrator
- Notifications and workflow events
"""
