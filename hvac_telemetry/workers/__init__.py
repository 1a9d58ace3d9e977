"""Background jobs: scheduler and worker entrypoint."""
