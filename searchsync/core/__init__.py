"""Configuration and error types shared by the sync components."""
