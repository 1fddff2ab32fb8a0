"""Reference store-and-forward relay."""
