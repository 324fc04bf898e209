"""Configuration, logging and error handling helpers."""
