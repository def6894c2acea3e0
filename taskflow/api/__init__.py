"""REST API for the task-flow engine."""
