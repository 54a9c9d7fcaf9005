"""Shared building blocks: wire protocol, configuration, errors and logging."""
