"""Hardware-free heart rate sources for testing."""
