"""Workflow core: records, state machine, queue, stages and self-healing."""
