"""Configuration and logging shared by the service and the CLI."""
