"""Answer generation, streaming updates and the worker dispatcher."""
