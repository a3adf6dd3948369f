"""Consumer-side adapters: typed events, event bus, hub client, hook server."""
