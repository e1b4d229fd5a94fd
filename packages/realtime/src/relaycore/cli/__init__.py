"""Command-line entry point (``relaycore``)."""
