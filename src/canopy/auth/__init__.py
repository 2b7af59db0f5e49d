"""Authentication and request-time access adapters."""
