"""Loader, registry, connector merge, context assembly and command dispatch."""
