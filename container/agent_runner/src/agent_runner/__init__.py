"""In-sandbox agent runner: turn loop, agent cores and the IPC tool server."""
