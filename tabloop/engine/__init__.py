"""Session engine: event reduction, confirmation handling and loop policies.

Import concrete classes from their modules, e.g.
``from tabloop.engine.orchestrator import SessionOrchestrator``.
"""
