"""pincer: routes group-chat messages into per-group agent sandboxes."""
