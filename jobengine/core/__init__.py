"""Process-level wiring: logging and error reporting."""
