"""Service layer: settings, document parsers and model downloads."""
