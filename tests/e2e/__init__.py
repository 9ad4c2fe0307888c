"""End-to-end scenarios across components."""
