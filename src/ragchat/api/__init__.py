"""HTTP and real-time channel surface."""
