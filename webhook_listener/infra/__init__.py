"""Process infrastructure: socket activation and systemd integration."""
