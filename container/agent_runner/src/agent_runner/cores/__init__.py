"""Built-in agent core implementations."""
