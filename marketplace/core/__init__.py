"""Core package for configuration and logging shared across the service."""
