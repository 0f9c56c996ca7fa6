"""Execution: task queue, retry policies, timeouts, collaborator boundary and worker pool."""
