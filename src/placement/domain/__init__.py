"""Domain errors and reason codes."""
