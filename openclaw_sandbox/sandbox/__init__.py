"""In-container startup entrypoint, setup steps, sync loop and supervisor."""
