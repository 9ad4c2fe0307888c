"""Session Keeper test suite."""
