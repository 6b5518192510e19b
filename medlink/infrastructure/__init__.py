"""Infrastructure layer: configuration, settings and audit writing."""
