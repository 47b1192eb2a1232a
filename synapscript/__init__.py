"""
SynapScript: automation execution and scheduling engine.

- models.py: Automation, Step and ExecutionLog data model
- runner/: process execution, step runs, generated code, scheduling
- planner.py: AI planning of automations from free text
- server.py: HTTP API and WebSocket event stream
"""

__version__ = '0.1.0'
