"""Panel-level domain services that sit between views and the AI pipeline."""
