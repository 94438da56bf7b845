"""Foundation layer: configuration, logging, errors and metrics."""
