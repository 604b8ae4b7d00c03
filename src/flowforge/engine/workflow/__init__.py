"""Runtime execution: instances, tokens, tasks and SLA checks."""
