"""HTTP-layer dependency providers."""
