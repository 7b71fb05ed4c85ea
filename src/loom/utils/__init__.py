"""Small utilities shared by the training driver and the CLI."""
