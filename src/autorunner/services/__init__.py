"""External service boundaries: storage and notifications."""
