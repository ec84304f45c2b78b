"""Command-line front-end and live dashboard for tickwork."""
