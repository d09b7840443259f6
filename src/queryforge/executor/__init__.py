"""Async execution: http client, batching, debounce and coordination."""
