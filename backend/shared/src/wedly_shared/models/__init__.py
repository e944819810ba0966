"""Domain models for the payment pipeline."""
